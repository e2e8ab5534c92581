"""Shared utility functions used across petition modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back for DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def base_name(name: str) -> str:
    """Strip a trailing ``" - <suffix>"`` so versions of a document group together.

    ``"Personal Statement - v2"`` and ``"Personal Statement - Final"`` both map to
    ``"Personal Statement"``.
    """
    name = (name or "").strip()
    if " - " not in name:
        return name
    return name.rpartition(" - ")[0].strip()


def as_str_list(value: Any) -> list[str]:
    """Coerce an LLM-provided value into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value)]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return default
