from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def isolated_access_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep developer shell settings from switching auth on mid-suite.
    for name in ("ACCESS_API_KEY", "ACCESS_API_TOKENS_JSON"):
        monkeypatch.delenv(name, raising=False)
