from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from access.main import create_app
from fastapi.testclient import TestClient

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "access.sqlite3"
    app = create_app(database_path=str(db_path))
    with TestClient(app) as test_client:
        yield test_client


def test_request_id_header_is_generated(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/health")

    assert first.headers.get("x-request-id")
    assert second.headers.get("x-request-id")
    assert first.headers["x-request-id"] != second.headers["x-request-id"]


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})
    assert response.status_code == 200
    assert response.headers.get("x-request-id") == "manual-request-id"


def test_unknown_route_uses_error_envelope(client: TestClient) -> None:
    response = client.get("/missing-endpoint")

    assert response.status_code == 404
    assert response.json()["ok"] is False
    assert response.json()["error"]["code"] == "NOT_FOUND"
    assert response.headers.get("x-request-id")


def test_unhandled_error_returns_internal_error_envelope(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def explode() -> list:
        raise RuntimeError("database on fire")

    monkeypatch.setattr(client.app.state.repository, "list_roles", explode)

    response = client.get("/roles", headers={"x-request-id": "boom"})

    assert response.status_code == 500
    assert response.json() == {
        "ok": False,
        "error": {
            "message": "Internal Server Error",
            "code": "INTERNAL_ERROR",
            "details": {"request_id": "boom"},
        },
    }


def test_membership_changes_are_logged(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    role = client.post("/roles", json={"name": "Editor"}).json()["value"]
    permission_id = client.get("/permissions").json()["value"][0]["id"]

    with caplog.at_level(logging.INFO, logger="gatehouse.access.reconciler"):
        client.put(f"/roles/{role['id']}/permissions", json={"permissionIds": [permission_id]})

    events = [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "gatehouse.access.reconciler"
    ]
    assert events == [
        {
            "event": "membership_reconciled",
            "operation": "sync",
            "owner": "role",
            "owner_id": role["id"],
            "added": 1,
            "removed": 0,
            "attached": 1,
        }
    ]
