from __future__ import annotations

import sqlite3
from typing import Any

from common.utils import slugify
from fastapi.concurrency import run_in_threadpool

from access.errors import CONFLICT, DELETE_FAILED, NOT_FOUND, UPDATE_FAILED, DomainError
from access.reconciler import MembershipReconciler, MembershipResult
from access.repository import AccessRepository
from access.schemas import (
    AddRolePermissionsInput,
    CreateRoleInput,
    DeletedRole,
    Permission,
    RemoveRolePermissionsInput,
    Role,
    SyncRolePermissionsInput,
    UpdateRoleInput,
    UpdateRoleNameInput,
    User,
)
from access.validation import parse_with

RolePermissionReconciler = MembershipReconciler[int, Permission]


async def ensure_unique_slug(repository: AccessRepository, name: str) -> str:
    base_slug = slugify(name) or "role"
    candidate = base_slug
    suffix = 2
    while await run_in_threadpool(repository.find_role_by_slug, candidate) is not None:
        candidate = f"{base_slug}-{suffix}"
        suffix += 1
    return candidate


async def get_role(repository: AccessRepository, role_id: int) -> Role:
    role = await run_in_threadpool(repository.find_role_by_id, role_id)
    if role is None:
        raise DomainError("Role not found", NOT_FOUND, {"role_id": role_id})
    return role


async def create_role(repository: AccessRepository, data: dict[str, Any]) -> Role:
    payload = parse_with(CreateRoleInput, data)
    slug = await ensure_unique_slug(repository, payload.name)
    try:
        return await run_in_threadpool(
            lambda: repository.insert_role(
                name=payload.name,
                slug=slug,
                description=payload.description,
            )
        )
    except sqlite3.IntegrityError as exc:
        raise DomainError("Role slug already exists", CONFLICT, {"slug": slug}) from exc


async def update_role(repository: AccessRepository, data: dict[str, Any]) -> Role:
    payload = parse_with(UpdateRoleInput, data)
    existing = await get_role(repository, payload.id)

    slug: str | None = None
    if payload.name and payload.name != existing.name:
        slug = await ensure_unique_slug(repository, payload.name)

    updated = await run_in_threadpool(
        lambda: repository.update_role(
            payload.id,
            name=payload.name,
            slug=slug,
            description=payload.description,
        )
    )
    if updated is None:
        raise DomainError("Failed to update role", UPDATE_FAILED)
    return updated


async def update_role_name(repository: AccessRepository, data: dict[str, Any]) -> Role:
    payload = parse_with(UpdateRoleNameInput, data)
    existing = await get_role(repository, payload.id)

    slug: str | None = None
    if payload.name != existing.name:
        slug = await ensure_unique_slug(repository, payload.name)

    updated = await run_in_threadpool(
        lambda: repository.update_role(payload.id, name=payload.name, slug=slug)
    )
    if updated is None:
        raise DomainError("Failed to update role name", UPDATE_FAILED)
    return updated


async def delete_role(repository: AccessRepository, role_id: int) -> DeletedRole:
    await get_role(repository, role_id)
    deleted = await run_in_threadpool(repository.delete_role, role_id)
    if not deleted:
        raise DomainError("Failed to delete role", DELETE_FAILED)
    return DeletedRole(id=role_id)


async def sync_role_permissions(
    reconciler: RolePermissionReconciler,
    data: dict[str, Any],
) -> MembershipResult:
    payload = parse_with(SyncRolePermissionsInput, data)
    return await reconciler.sync(payload.id, payload.permission_ids)


async def add_role_permissions(
    reconciler: RolePermissionReconciler,
    data: dict[str, Any],
) -> MembershipResult:
    payload = parse_with(AddRolePermissionsInput, data)
    return await reconciler.add(payload.id, payload.permission_ids)


async def remove_role_permissions(
    reconciler: RolePermissionReconciler,
    data: dict[str, Any],
) -> MembershipResult:
    payload = parse_with(RemoveRolePermissionsInput, data)
    return await reconciler.remove(payload.id, payload.permission_ids)


async def list_role_permissions(
    reconciler: RolePermissionReconciler,
    role_id: int,
) -> list[Permission]:
    return await reconciler.members(role_id)


async def list_role_users(repository: AccessRepository, role_id: int) -> list[User]:
    await get_role(repository, role_id)
    return await run_in_threadpool(repository.list_users_for_role, role_id)
