from __future__ import annotations

from pathlib import Path

import pytest
from access.repository import AccessRepository
from access.store import RolePermissionStore, SqliteRelationStore, UserRoleStore

pytestmark = pytest.mark.unit


class HalfStore(SqliteRelationStore[int, int]):
    def _find_owner(self, owner_id: int) -> None:
        return None


def test_store_missing_hooks_cannot_be_built(tmp_path: Path) -> None:
    repository = AccessRepository(database_path=str(tmp_path / "access.sqlite3"))

    with pytest.raises(TypeError):
        HalfStore(repository)
    with pytest.raises(TypeError):
        SqliteRelationStore(repository)


def test_concrete_stores_are_complete(tmp_path: Path) -> None:
    repository = AccessRepository(database_path=str(tmp_path / "access.sqlite3"))

    assert RolePermissionStore(repository).owner_label == "Role"
    assert UserRoleStore(repository).member_label == "roles"
