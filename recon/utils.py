"""Shared utility functions used across Recon modules."""
from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()

TRUNCATION_MARKER = "\n\n[...truncated...]"


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes; every timestamp we write is UTC, so
    naive values are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_whitespace(text: str) -> str:
    return " ".join(text.replace("\xa0", " ").split())


def hash_text(text: str) -> str:
    """SHA-256 hex digest of whitespace-normalized *text*."""
    return hashlib.sha256(normalize_whitespace(text).encode("utf-8")).hexdigest()


def cap_text(text: str | None, max_chars: int, marker: str = TRUNCATION_MARKER) -> str:
    """Truncate *text* to *max_chars*, appending *marker* when anything was cut.

    The marker is added on top of *max_chars*.
    """
    text = text or ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker
