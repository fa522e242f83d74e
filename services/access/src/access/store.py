"""Relation stores for the two membership relations.

Each store exposes one many-to-many relation (owner -> members) to the
reconciler through a small async contract. The sqlite repository is
synchronous, so every call is dispatched to the thread pool.
"""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Hashable
from typing import Any, Generic, Protocol, TypeVar

from fastapi.concurrency import run_in_threadpool

from access.errors import DELETE_FAILED, UPDATE_FAILED, DomainError
from access.repository import AccessRepository
from access.schemas import Permission, Role

OwnerT = TypeVar("OwnerT", bound=Hashable)
MemberT = TypeVar("MemberT")


class RelationStore(Protocol[OwnerT, MemberT]):
    owner_label: str
    member_label: str

    async def owner_exists(self, owner_id: OwnerT) -> bool: ...

    async def fetch_members(self, member_ids: Collection[int]) -> list[MemberT]: ...

    async def list_attached(self, owner_id: OwnerT) -> set[int]: ...

    async def insert_many(self, owner_id: OwnerT, member_ids: Collection[int]) -> None: ...

    async def delete_many(self, owner_id: OwnerT, member_ids: Collection[int]) -> None: ...

    async def list_attached_detailed(self, owner_id: OwnerT) -> list[MemberT]: ...


class SqliteRelationStore(ABC, Generic[OwnerT, MemberT]):
    owner_label = "Owner"
    member_label = "members"

    def __init__(self, repository: AccessRepository) -> None:
        self.repository = repository

    @abstractmethod
    def _find_owner(self, owner_id: OwnerT) -> Any:
        ...

    @abstractmethod
    def _find_members(self, member_ids: list[int]) -> list[MemberT]:
        ...

    @abstractmethod
    def _attached_ids(self, owner_id: OwnerT) -> set[int]:
        ...

    @abstractmethod
    def _attached_members(self, owner_id: OwnerT) -> list[MemberT]:
        ...

    @abstractmethod
    def _insert(self, owner_id: OwnerT, member_ids: list[int]) -> None:
        ...

    @abstractmethod
    def _delete(self, owner_id: OwnerT, member_ids: list[int]) -> None:
        ...

    async def owner_exists(self, owner_id: OwnerT) -> bool:
        owner = await run_in_threadpool(self._find_owner, owner_id)
        return owner is not None

    async def fetch_members(self, member_ids: Collection[int]) -> list[MemberT]:
        if not member_ids:
            return []
        return await run_in_threadpool(self._find_members, list(member_ids))

    async def list_attached(self, owner_id: OwnerT) -> set[int]:
        return await run_in_threadpool(self._attached_ids, owner_id)

    async def insert_many(self, owner_id: OwnerT, member_ids: Collection[int]) -> None:
        if not member_ids:
            return
        await self._write(self._insert, owner_id, list(member_ids), code=UPDATE_FAILED)

    async def delete_many(self, owner_id: OwnerT, member_ids: Collection[int]) -> None:
        if not member_ids:
            return
        await self._write(self._delete, owner_id, list(member_ids), code=DELETE_FAILED)

    async def list_attached_detailed(self, owner_id: OwnerT) -> list[MemberT]:
        return await run_in_threadpool(self._attached_members, owner_id)

    async def _write(
        self,
        operation: Callable[[OwnerT, list[int]], None],
        owner_id: OwnerT,
        member_ids: list[int],
        *,
        code: str,
    ) -> None:
        try:
            await run_in_threadpool(operation, owner_id, member_ids)
        except sqlite3.Error as exc:
            verb = "update" if code == UPDATE_FAILED else "delete"
            raise DomainError(
                f"Failed to {verb} {self.member_label} of {self.owner_label.lower()}",
                code,
                {"owner_id": owner_id, "member_ids": member_ids, "reason": str(exc)},
            ) from exc


class RolePermissionStore(SqliteRelationStore[int, Permission]):
    owner_label = "Role"
    member_label = "permissions"

    def _find_owner(self, owner_id: int) -> Role | None:
        return self.repository.find_role_by_id(owner_id)

    def _find_members(self, member_ids: list[int]) -> list[Permission]:
        return self.repository.find_permissions_by_ids(member_ids)

    def _attached_ids(self, owner_id: int) -> set[int]:
        return self.repository.get_permission_ids_for_role(owner_id)

    def _attached_members(self, owner_id: int) -> list[Permission]:
        return self.repository.get_role_permissions(owner_id)

    def _insert(self, owner_id: int, member_ids: list[int]) -> None:
        self.repository.add_role_permissions(owner_id, member_ids)

    def _delete(self, owner_id: int, member_ids: list[int]) -> None:
        self.repository.remove_role_permissions(owner_id, member_ids)


class UserRoleStore(SqliteRelationStore[str, Role]):
    owner_label = "User"
    member_label = "roles"

    def _find_owner(self, owner_id: str) -> Any:
        return self.repository.get_user(owner_id)

    def _find_members(self, member_ids: list[int]) -> list[Role]:
        return self.repository.find_roles_by_ids(member_ids)

    def _attached_ids(self, owner_id: str) -> set[int]:
        return self.repository.get_role_ids_for_user(owner_id)

    def _attached_members(self, owner_id: str) -> list[Role]:
        return self.repository.get_user_roles(owner_id)

    def _insert(self, owner_id: str, member_ids: list[int]) -> None:
        self.repository.add_user_roles(owner_id, member_ids)

    def _delete(self, owner_id: str, member_ids: list[int]) -> None:
        self.repository.remove_user_roles(owner_id, member_ids)
