"""Shape-sniffing helpers for loosely typed app-server JSON payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

# Epoch numbers above this are milliseconds, below are seconds.
EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000

Rule = Callable[[Any], Any]


def get_record(value: Any, key: str) -> Optional[dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    candidate = value.get(key)
    return candidate if isinstance(candidate, dict) else None


def get_string(value: Any, key: str) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    candidate = value.get(key)
    return candidate if isinstance(candidate, str) else None


def get_array(value: Any, key: str) -> Optional[list[Any]]:
    if not isinstance(value, dict):
        return None
    candidate = value.get(key)
    return candidate if isinstance(candidate, list) else None


def get_id_string(value: Any) -> Optional[str]:
    """Coerce a JSON-RPC style id (string or number) to a string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value)
    return None


def is_rpc_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def first_match(rules: Iterable[Rule], value: Any) -> Any:
    """Evaluate extraction rules in order and return the first non-None result."""
    for rule in rules:
        result = rule(value)
        if result is not None:
            return result
    return None


def format_timestamp(moment: datetime) -> str:
    """Canonical timestamp form: UTC, millisecond precision, trailing Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_timestamp(value: Any) -> Optional[str]:
    """Normalize an ISO-8601 string or an epoch number (s or ms) to the canonical form."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > EPOCH_MILLIS_THRESHOLD else value
        try:
            return format_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return format_timestamp(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None
