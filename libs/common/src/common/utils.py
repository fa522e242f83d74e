from __future__ import annotations

import re
from collections.abc import Hashable, Iterable
from datetime import UTC, datetime
from typing import TypeVar

H = TypeVar("H", bound=Hashable)


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def dedupe(values: Iterable[H]) -> list[H]:
    """Drop repeated values, keeping the first occurrence order."""
    return list(dict.fromkeys(values))


def slugify(text: str) -> str:
    lowered = text.lower().strip()
    stripped = re.sub(r"[^a-z0-9\s-]", "", lowered)
    hyphenated = re.sub(r"\s+", "-", stripped)
    return re.sub(r"-+", "-", hyphenated)
