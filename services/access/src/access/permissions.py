from __future__ import annotations

from typing import Any

from fastapi.concurrency import run_in_threadpool

from access.errors import NOT_FOUND, UPDATE_FAILED, DomainError
from access.repository import AccessRepository
from access.schemas import Permission, Role, SeedPermission, UpdatePermissionInput
from access.validation import parse_with

MANAGE_PERMISSIONS = "manage-permission"
MANAGE_ROLE_PERMISSIONS = "manage-role-permission"
MANAGE_USERS = "manage-users"
VIEW_AUDIT_EVENTS = "view-audit-events"

DEFAULT_PERMISSIONS = (
    SeedPermission(
        name="Manage permissions",
        slug=MANAGE_PERMISSIONS,
        description="Rename and describe permissions",
    ),
    SeedPermission(
        name="Manage roles",
        slug=MANAGE_ROLE_PERMISSIONS,
        description="Create roles and assign their permissions",
    ),
    SeedPermission(
        name="Manage users",
        slug=MANAGE_USERS,
        description="Edit users and assign their roles",
    ),
    SeedPermission(
        name="View audit events",
        slug=VIEW_AUDIT_EVENTS,
        description="Read the access audit trail",
    ),
)


async def get_permission(repository: AccessRepository, permission_id: int) -> Permission:
    permission = await run_in_threadpool(repository.get_permission, permission_id)
    if permission is None:
        raise DomainError("Permission not found", NOT_FOUND, {"permission_id": permission_id})
    return permission


async def update_permission(repository: AccessRepository, data: dict[str, Any]) -> Permission:
    # Slug stays fixed; route guards refer to permissions by slug.
    payload = parse_with(UpdatePermissionInput, data)
    await get_permission(repository, payload.id)
    updated = await run_in_threadpool(
        lambda: repository.update_permission(
            payload.id,
            name=payload.name,
            description=payload.description,
        )
    )
    if updated is None:
        raise DomainError("Failed to update permission", UPDATE_FAILED)
    return updated


async def list_permission_roles(repository: AccessRepository, permission_id: int) -> list[Role]:
    await get_permission(repository, permission_id)
    return await run_in_threadpool(repository.list_roles_for_permission, permission_id)
