from __future__ import annotations

from datetime import datetime

import pytest
from common.utils import dedupe, now_utc_iso, slugify

pytestmark = pytest.mark.unit


def test_dedupe_keeps_first_occurrence_order() -> None:
    assert dedupe([3, 1, 3, 2, 1]) == [3, 1, 2]


def test_dedupe_returns_empty_list_for_empty_input() -> None:
    assert dedupe([]) == []


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Content Editor", "content-editor"),
        ("  Billing   Admin ", "billing-admin"),
        ("Ops / On-Call!", "ops-on-call"),
        ("QA--Lead", "qa-lead"),
    ],
)
def test_slugify_normalizes_names(name: str, expected: str) -> None:
    assert slugify(name) == expected


def test_now_utc_iso_returns_parseable_utc_timestamp() -> None:
    parsed = datetime.fromisoformat(now_utc_iso())
    assert parsed.tzinfo is not None
    assert parsed.utcoffset() is not None
    assert parsed.utcoffset().total_seconds() == 0
