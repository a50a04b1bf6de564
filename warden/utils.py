"""Identifier generation, validation and data-copying helpers."""

from __future__ import annotations

import math
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from .errors import ValidationError

_WHITESPACE = " \t\n\r"
_MAX_STATE_ID = 100
_MAX_INSTANCE_ID = 255


def generate_id() -> str:
    """Return a new random UUID string."""
    return str(uuid.uuid4())


def generate_short_id() -> str:
    """Return 8 random bytes as a hex string."""
    return secrets.token_hex(8)


def generate_execution_id(instance_id: str) -> str:
    """Return an execution identifier derived from an instance identifier."""
    return f"{instance_id}_{generate_short_id()}"


def _is_identifier_start(ch: str) -> bool:
    return ("a" <= ch <= "z") or ("A" <= ch <= "Z") or ch == "_"


def _is_identifier_char(ch: str) -> bool:
    return _is_identifier_start(ch) or ("0" <= ch <= "9") or ch == "-"


def validate_state_id(state_id: str) -> None:
    """Raise ValidationError unless state_id is a valid state identifier."""
    if not state_id:
        raise ValidationError("state ID cannot be empty")
    if len(state_id) > _MAX_STATE_ID:
        raise ValidationError("state ID too long (max 100 characters)")
    if not _is_identifier_start(state_id[0]):
        raise ValidationError("state ID must start with a letter or underscore")
    for ch in state_id:
        if not _is_identifier_char(ch):
            raise ValidationError(f"state ID contains invalid character: {ch}")


def validate_instance_id(instance_id: str) -> None:
    """Raise ValidationError unless instance_id is a valid instance identifier."""
    if not instance_id:
        raise ValidationError("instance ID cannot be empty")
    if len(instance_id) > _MAX_INSTANCE_ID:
        raise ValidationError("instance ID too long (max 255 characters)")
    if any(ch in _WHITESPACE for ch in instance_id):
        raise ValidationError("instance ID cannot contain whitespace")


def validate_execution_id(execution_id: str) -> None:
    """Raise ValidationError if execution_id is empty."""
    if not execution_id:
        raise ValidationError("execution ID cannot be empty")


def copy_value(original: Any) -> Any:
    """Deep-copy dicts and lists; return any other value unchanged."""
    if isinstance(original, dict):
        return copy_map(original)
    if isinstance(original, list):
        return [copy_value(item) for item in original]
    return original


def copy_map(original: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return a deep copy of a mapping, or None when given None."""
    if original is None:
        return None
    return {key: copy_value(value) for key, value in original.items()}


def merge_map(
    base: dict[str, Any] | None, overlay: dict[str, Any] | None
) -> dict[str, Any]:
    """Return a new mapping with overlay's entries taking precedence over base's."""
    result = copy_map(base) or {}
    if overlay:
        result.update((key, copy_value(value)) for key, value in overlay.items())
    return result


def unique_strings(items: Iterable[str]) -> list[str]:
    """Return the distinct strings of items in first-seen order."""
    return list(dict.fromkeys(items))


def _go_duration(total_us: int) -> str:
    sign = "-" if total_us < 0 else ""
    total_us = abs(total_us)
    hours, rest = divmod(total_us, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    whole, frac = divmod(rest, 1_000_000)
    seconds = f"{whole}.{frac:06d}".rstrip("0") if frac else str(whole)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    return f"{sign}{minutes}m{seconds}s"


def format_duration(duration: timedelta | float) -> str:
    """Format a duration (timedelta or seconds) for display."""
    if not isinstance(duration, timedelta):
        duration = timedelta(seconds=duration)
    total_us = (
        duration.days * 86_400_000_000
        + duration.seconds * 1_000_000
        + duration.microseconds
    )
    if total_us < 1_000:
        return f"{float(total_us):.2f}μs"
    if total_us < 1_000_000:
        return f"{total_us / 1_000:.2f}ms"
    if total_us < 60_000_000:
        return f"{total_us / 1_000_000:.2f}s"
    return _go_duration(total_us)


def current_timestamp() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(timezone.utc)


def safe_string(value: Any) -> str:
    """Convert any value to a string; None becomes the empty string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def safe_int(value: Any) -> int:
    """Convert numeric values to int, truncating floats; anything else gives 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    return 0


def safe_bool(value: Any) -> bool:
    """Return value if it is a bool, otherwise False."""
    return value if isinstance(value, bool) else False