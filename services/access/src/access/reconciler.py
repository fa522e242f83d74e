"""Membership reconciliation for owner -> members relations.

Add, remove and sync all follow the same shape: validate, read the
currently attached member ids, compute a diff with set lookups, apply the
insert batch and then the delete batch, and re-read the attached members
as the authoritative post-state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from common.utils import dedupe

from access.errors import NOT_FOUND, DomainError
from access.store import RelationStore

LOGGER = logging.getLogger("gatehouse.access.reconciler")

OwnerT = TypeVar("OwnerT", bound=Hashable)
MemberT = TypeVar("MemberT")


@dataclass(frozen=True)
class MembershipDiff:
    to_add: list[int] = field(default_factory=list)
    to_remove: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


@dataclass(frozen=True)
class MembershipResult(Generic[OwnerT, MemberT]):
    owner_id: OwnerT
    members: list[MemberT]
    diff: MembershipDiff


def diff_for_add(current: set[int], requested: Iterable[int]) -> MembershipDiff:
    to_add = [member_id for member_id in dedupe(requested) if member_id not in current]
    return MembershipDiff(to_add=to_add)


def diff_for_remove(current: set[int], requested: Iterable[int]) -> MembershipDiff:
    to_remove = [member_id for member_id in dedupe(requested) if member_id in current]
    return MembershipDiff(to_remove=to_remove)


def diff_for_sync(current: set[int], desired: Iterable[int]) -> MembershipDiff:
    desired_ids = dedupe(desired)
    desired_set = set(desired_ids)
    return MembershipDiff(
        to_add=[member_id for member_id in desired_ids if member_id not in current],
        to_remove=sorted(current - desired_set),
    )


class ExistenceValidator(Generic[OwnerT, MemberT]):
    def __init__(self, store: RelationStore[OwnerT, MemberT]) -> None:
        self.store = store

    async def require_owner(self, owner_id: OwnerT) -> None:
        if not await self.store.owner_exists(owner_id):
            raise DomainError(
                f"{self.store.owner_label} not found",
                NOT_FOUND,
                {"owner_id": owner_id},
            )

    async def require_members(self, member_ids: list[int]) -> None:
        """Fail unless every id in the (already deduplicated) list exists."""
        if not member_ids:
            return
        found = await self.store.fetch_members(member_ids)
        if len(found) == len(member_ids):
            return
        found_ids = {member.id for member in found}  # type: ignore[attr-defined]
        missing = [member_id for member_id in member_ids if member_id not in found_ids]
        raise DomainError(
            f"Some {self.store.member_label} not found",
            NOT_FOUND,
            {"missing_ids": missing},
        )


class MembershipReconciler(Generic[OwnerT, MemberT]):
    def __init__(self, store: RelationStore[OwnerT, MemberT]) -> None:
        self.store = store
        self.validator: ExistenceValidator[OwnerT, MemberT] = ExistenceValidator(store)

    async def add(self, owner_id: OwnerT, member_ids: Iterable[int]) -> MembershipResult:
        requested = dedupe(member_ids)
        await self.validator.require_owner(owner_id)
        await self.validator.require_members(requested)
        current = await self.store.list_attached(owner_id)
        return await self._apply(owner_id, diff_for_add(current, requested), operation="add")

    async def remove(self, owner_id: OwnerT, member_ids: Iterable[int]) -> MembershipResult:
        requested = dedupe(member_ids)
        await self.validator.require_owner(owner_id)
        current = await self.store.list_attached(owner_id)
        return await self._apply(owner_id, diff_for_remove(current, requested), operation="remove")

    async def sync(self, owner_id: OwnerT, desired_ids: Iterable[int]) -> MembershipResult:
        desired = dedupe(desired_ids)
        await self.validator.require_owner(owner_id)
        await self.validator.require_members(desired)
        current = await self.store.list_attached(owner_id)
        return await self._apply(owner_id, diff_for_sync(current, desired), operation="sync")

    async def members(self, owner_id: OwnerT) -> list[MemberT]:
        await self.validator.require_owner(owner_id)
        return await self.store.list_attached_detailed(owner_id)

    async def _apply(
        self,
        owner_id: OwnerT,
        diff: MembershipDiff,
        *,
        operation: str,
    ) -> MembershipResult:
        # Insert batch first, then delete batch; the two are not one transaction.
        await self.store.insert_many(owner_id, diff.to_add)
        await self.store.delete_many(owner_id, diff.to_remove)
        members = await self.store.list_attached_detailed(owner_id)
        LOGGER.info(
            json.dumps(
                {
                    "event": "membership_reconciled",
                    "operation": operation,
                    "owner": self.store.owner_label.lower(),
                    "owner_id": owner_id,
                    "added": len(diff.to_add),
                    "removed": len(diff.to_remove),
                    "attached": len(members),
                }
            )
        )
        return MembershipResult(owner_id=owner_id, members=members, diff=diff)
