from __future__ import annotations

import asyncio
import sqlite3
from typing import Any

from fastapi.concurrency import run_in_threadpool

from access.errors import CONFLICT, NOT_FOUND, UPDATE_FAILED, DomainError
from access.reconciler import MembershipReconciler, MembershipResult
from access.repository import AccessRepository
from access.schemas import (
    AddUserRolesInput,
    CreateUserInput,
    Permission,
    RemoveUserRolesInput,
    Role,
    SyncUserRolesInput,
    UpdateUserInput,
    User,
    UserDetail,
)
from access.validation import parse_with

UserRoleReconciler = MembershipReconciler[str, Role]


async def get_user(repository: AccessRepository, user_id: str) -> User:
    user = await run_in_threadpool(repository.get_user, user_id)
    if user is None:
        raise DomainError("User not found", NOT_FOUND, {"user_id": user_id})
    return user


async def create_user(repository: AccessRepository, data: dict[str, Any]) -> User:
    payload = parse_with(CreateUserInput, data)
    try:
        return await run_in_threadpool(
            lambda: repository.create_user(
                name=payload.name,
                email=str(payload.email).lower(),
                image=str(payload.image) if payload.image else None,
            )
        )
    except sqlite3.IntegrityError as exc:
        raise DomainError("Email already registered", CONFLICT, {"email": payload.email}) from exc


async def update_user(repository: AccessRepository, data: dict[str, Any]) -> User:
    payload = parse_with(UpdateUserInput, data)
    await get_user(repository, payload.id)
    updated = await run_in_threadpool(
        lambda: repository.update_user(
            payload.id,
            name=payload.name,
            image=str(payload.image) if payload.image else None,
        )
    )
    if updated is None:
        raise DomainError("Failed to update user", UPDATE_FAILED)
    return updated


async def get_user_detail(repository: AccessRepository, user_id: str) -> UserDetail | None:
    user = await run_in_threadpool(repository.get_user, user_id)
    if user is None:
        return None
    roles, permissions = await asyncio.gather(
        run_in_threadpool(repository.get_user_roles, user_id),
        run_in_threadpool(repository.get_user_permissions, user_id),
    )
    return UserDetail(user=user, roles=roles, permissions=permissions)


async def get_user_permissions(repository: AccessRepository, user_id: str) -> list[Permission]:
    await get_user(repository, user_id)
    return await run_in_threadpool(repository.get_user_permissions, user_id)


async def get_user_role_permissions(
    repository: AccessRepository,
    user_id: str,
    role_slug: str,
) -> list[Permission]:
    await get_user(repository, user_id)
    return await run_in_threadpool(repository.get_user_role_permissions, user_id, role_slug)


async def sync_user_roles(
    reconciler: UserRoleReconciler,
    data: dict[str, Any],
) -> MembershipResult:
    payload = parse_with(SyncUserRolesInput, data)
    return await reconciler.sync(payload.id, payload.role_ids)


async def add_user_roles(
    reconciler: UserRoleReconciler,
    data: dict[str, Any],
) -> MembershipResult:
    payload = parse_with(AddUserRolesInput, data)
    return await reconciler.add(payload.id, payload.role_ids)


async def remove_user_roles(
    reconciler: UserRoleReconciler,
    data: dict[str, Any],
) -> MembershipResult:
    payload = parse_with(RemoveUserRolesInput, data)
    return await reconciler.remove(payload.id, payload.role_ids)


async def list_user_roles(
    reconciler: UserRoleReconciler,
    user_id: str,
) -> list[Role]:
    return await reconciler.members(user_id)
