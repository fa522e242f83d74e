from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass

import pytest
from access.errors import NOT_FOUND, UPDATE_FAILED, DomainError
from access.reconciler import (
    MembershipReconciler,
    diff_for_add,
    diff_for_remove,
    diff_for_sync,
)

pytestmark = pytest.mark.unit


@dataclass(frozen=True)
class Member:
    id: int


class InMemoryStore:
    owner_label = "Role"
    member_label = "permissions"

    def __init__(self, owners: set[int], member_ids: set[int]) -> None:
        self.owners = owners
        self.member_ids = member_ids
        self.attached: dict[int, set[int]] = {owner: set() for owner in owners}
        self.insert_calls: list[list[int]] = []
        self.delete_calls: list[list[int]] = []
        self.fail_inserts = False

    async def owner_exists(self, owner_id: int) -> bool:
        return owner_id in self.owners

    async def fetch_members(self, member_ids: Collection[int]) -> list[Member]:
        return [Member(member_id) for member_id in member_ids if member_id in self.member_ids]

    async def list_attached(self, owner_id: int) -> set[int]:
        return set(self.attached[owner_id])

    async def insert_many(self, owner_id: int, member_ids: Collection[int]) -> None:
        if not member_ids:
            return
        if self.fail_inserts:
            raise DomainError("Failed to update permissions of role", UPDATE_FAILED)
        self.insert_calls.append(list(member_ids))
        self.attached[owner_id].update(member_ids)

    async def delete_many(self, owner_id: int, member_ids: Collection[int]) -> None:
        if not member_ids:
            return
        self.delete_calls.append(list(member_ids))
        self.attached[owner_id].difference_update(member_ids)

    async def list_attached_detailed(self, owner_id: int) -> list[Member]:
        return [Member(member_id) for member_id in sorted(self.attached[owner_id])]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(owners={1, 2}, member_ids={1, 2, 3, 4, 5})


@pytest.fixture
def reconciler(store: InMemoryStore) -> MembershipReconciler[int, Member]:
    return MembershipReconciler(store)


def attached_ids(result) -> list[int]:
    return [member.id for member in result.members]


def test_diff_for_add_skips_attached_and_duplicates() -> None:
    diff = diff_for_add({1, 2}, [3, 2, 3, 4])

    assert diff.to_add == [3, 4]
    assert diff.to_remove == []


def test_diff_for_remove_only_targets_attached_ids() -> None:
    diff = diff_for_remove({1, 2, 3}, [3, 9, 3, 1])

    assert diff.to_add == []
    assert diff.to_remove == [3, 1]


def test_diff_for_sync_converges_on_desired_set() -> None:
    diff = diff_for_sync({1, 2, 3}, [2, 3, 4])

    assert diff.to_add == [4]
    assert diff.to_remove == [1]
    assert not diff.is_empty


def test_diff_for_sync_is_empty_when_already_converged() -> None:
    assert diff_for_sync({2, 3}, [3, 2, 2]).is_empty


@pytest.mark.asyncio
async def test_add_is_idempotent(reconciler, store: InMemoryStore) -> None:
    first = await reconciler.add(1, [1, 2])
    second = await reconciler.add(1, [1, 2])

    assert attached_ids(first) == [1, 2]
    assert attached_ids(second) == [1, 2]
    assert store.insert_calls == [[1, 2]]
    assert second.diff.is_empty


@pytest.mark.asyncio
async def test_add_deduplicates_request(reconciler, store: InMemoryStore) -> None:
    result = await reconciler.add(1, [3, 3, 1, 3])

    assert store.insert_calls == [[3, 1]]
    assert attached_ids(result) == [1, 3]


@pytest.mark.asyncio
async def test_add_rejects_missing_members_without_writing(
    reconciler,
    store: InMemoryStore,
) -> None:
    with pytest.raises(DomainError) as excinfo:
        await reconciler.add(1, [1, 99, 42])

    assert excinfo.value.code == NOT_FOUND
    assert excinfo.value.message == "Some permissions not found"
    assert excinfo.value.details == {"missing_ids": [99, 42]}
    assert store.insert_calls == []
    assert store.attached[1] == set()


@pytest.mark.asyncio
async def test_unknown_owner_is_reported_before_any_mutation(
    reconciler,
    store: InMemoryStore,
) -> None:
    for operation in (reconciler.add, reconciler.remove, reconciler.sync):
        with pytest.raises(DomainError) as excinfo:
            await operation(77, [1])
        assert excinfo.value.code == NOT_FOUND
        assert excinfo.value.message == "Role not found"

    with pytest.raises(DomainError):
        await reconciler.members(77)

    assert store.insert_calls == []
    assert store.delete_calls == []


@pytest.mark.asyncio
async def test_remove_of_unattached_ids_is_a_no_op(reconciler, store: InMemoryStore) -> None:
    await reconciler.add(1, [1])

    result = await reconciler.remove(1, [2, 3, 99])

    assert attached_ids(result) == [1]
    assert store.delete_calls == []
    assert result.diff.is_empty


@pytest.mark.asyncio
async def test_remove_detaches_only_requested(reconciler, store: InMemoryStore) -> None:
    await reconciler.add(1, [1, 2, 3])

    result = await reconciler.remove(1, [2, 2])

    assert attached_ids(result) == [1, 3]
    assert store.delete_calls == [[2]]


@pytest.mark.asyncio
async def test_sync_replaces_membership(reconciler, store: InMemoryStore) -> None:
    await reconciler.add(1, [1, 2, 3])

    result = await reconciler.sync(1, [2, 3, 4])

    assert attached_ids(result) == [2, 3, 4]
    assert result.diff.to_add == [4]
    assert result.diff.to_remove == [1]
    assert store.insert_calls[-1] == [4]
    assert store.delete_calls == [[1]]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("initial", "desired", "expected"),
    [
        ([], [1, 2], [1, 2]),
        ([1, 2], [], []),
        ([1, 2, 3], [3, 1], [1, 3]),
        ([4], [5, 5, 4], [4, 5]),
    ],
)
async def test_sync_converges_and_repeats_cleanly(
    reconciler,
    store: InMemoryStore,
    initial: list[int],
    desired: list[int],
    expected: list[int],
) -> None:
    store.attached[1] = set(initial)

    first = await reconciler.sync(1, desired)
    writes_after_first = (len(store.insert_calls), len(store.delete_calls))
    second = await reconciler.sync(1, desired)

    assert attached_ids(first) == expected
    assert attached_ids(second) == expected
    assert second.diff.is_empty
    assert (len(store.insert_calls), len(store.delete_calls)) == writes_after_first


@pytest.mark.asyncio
async def test_sync_rejects_missing_members(reconciler, store: InMemoryStore) -> None:
    store.attached[1] = {1}

    with pytest.raises(DomainError) as excinfo:
        await reconciler.sync(1, [1, 6])

    assert excinfo.value.details == {"missing_ids": [6]}
    assert store.attached[1] == {1}


@pytest.mark.asyncio
async def test_owners_are_isolated(reconciler, store: InMemoryStore) -> None:
    await reconciler.add(1, [1, 2])
    await reconciler.sync(2, [3])

    assert attached_ids(await reconciler.sync(1, [2])) == [2]
    assert await reconciler.members(2) == [Member(3)]


@pytest.mark.asyncio
async def test_failed_insert_propagates_and_skips_delete(
    reconciler,
    store: InMemoryStore,
) -> None:
    store.attached[1] = {1}
    store.fail_inserts = True

    with pytest.raises(DomainError) as excinfo:
        await reconciler.sync(1, [2])

    assert excinfo.value.code == UPDATE_FAILED
    assert store.delete_calls == []
    assert store.attached[1] == {1}
