from __future__ import annotations

from pathlib import Path

import pytest
from access.main import create_app
from fastapi.testclient import TestClient
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd

ALL_SLUGS = ("read", "write", "publish", "purge")


@scenario("features/role_permissions.feature", "Sync replaces the permissions of a role")
def test_sync_replaces_role_permissions() -> None:
    pass


@scenario("features/role_permissions.feature", "Adding the same permissions twice changes nothing")
def test_repeated_add_is_idempotent() -> None:
    pass


@scenario("features/role_permissions.feature", "Unknown permissions are rejected without changes")
def test_unknown_permissions_are_rejected() -> None:
    pass


def split_slugs(raw: str) -> list[str]:
    return [slug.strip() for slug in raw.split(",") if slug.strip()]


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(database_path=str(tmp_path / "access.sqlite3"), seed_permissions=[])
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def context(client: TestClient) -> dict[str, object]:
    repository = client.app.state.repository
    permission_ids = {
        slug: repository.create_permission(name=slug.title(), slug=slug).id for slug in ALL_SLUGS
    }
    return {"permission_ids": permission_ids}


@given(parsers.parse('a role with permissions "{slugs}"'))
def given_role_with_permissions(
    client: TestClient,
    context: dict[str, object],
    slugs: str,
) -> None:
    role = client.post("/roles", json={"name": "Editor"}).json()["value"]
    permission_ids = context["permission_ids"]
    client.put(
        f"/roles/{role['id']}/permissions",
        json={"permissionIds": [permission_ids[slug] for slug in split_slugs(slugs)]},
    )
    context["role_id"] = role["id"]


@when(
    parsers.parse('the role permissions are synced to "{slugs}"'),
    target_fixture="response",
)
def when_permissions_synced(client: TestClient, context: dict[str, object], slugs: str):
    permission_ids = context["permission_ids"]
    return client.put(
        f"/roles/{context['role_id']}/permissions",
        json={"permissionIds": [permission_ids[slug] for slug in split_slugs(slugs)]},
    )


@when(
    parsers.parse('the permissions "{slugs}" are added to the role twice'),
    target_fixture="response",
)
def when_permissions_added_twice(client: TestClient, context: dict[str, object], slugs: str):
    permission_ids = context["permission_ids"]
    payload = {"permissionIds": [permission_ids[slug] for slug in split_slugs(slugs)]}
    client.post(f"/roles/{context['role_id']}/permissions", json=payload)
    return client.post(f"/roles/{context['role_id']}/permissions", json=payload)


@when("the role permissions are synced to ids that do not exist", target_fixture="response")
def when_permissions_synced_to_unknown_ids(client: TestClient, context: dict[str, object]):
    return client.put(
        f"/roles/{context['role_id']}/permissions",
        json={"permissionIds": [9001, 9002]},
    )


@then(parsers.parse("the request succeeds with status {status:d}"))
def then_request_succeeds(response, status: int) -> None:
    assert response.status_code == status
    assert response.json()["ok"] is True


@then(parsers.parse('the request fails with code "{code}"'))
def then_request_fails(response, code: str) -> None:
    assert response.json()["ok"] is False
    assert response.json()["error"]["code"] == code


@then(parsers.parse('the role holds permissions "{slugs}"'))
def then_role_holds_permissions(
    client: TestClient,
    context: dict[str, object],
    slugs: str,
) -> None:
    listed = client.get(f"/roles/{context['role_id']}/permissions")
    held = {member["slug"] for member in listed.json()["value"]["members"]}
    assert held == set(split_slugs(slugs))

    rows = client.app.state.repository.connection.execute(
        "SELECT COUNT(*) FROM role_permissions WHERE role_id = ?",
        (context["role_id"],),
    ).fetchone()[0]
    assert rows == len(held)
