"""Request validation shared by the backend services. Runs before any database access."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from callshield.backend.errors import BadRequestError
from callshield.core.identity import is_hex64


def require_fields(values: dict[str, Any]) -> None:
    missing = [name for name, value in values.items() if value is None or value == ""]
    if missing:
        noun = "field" if len(values) == 1 else "fields"
        raise BadRequestError(f"Missing required {noun}: {', '.join(values)}")


def require_hex64(value: str | None, *, field: str | None = None) -> str:
    """Return `value` if it is a 64-char lowercase hex digest."""

    if value is None or not is_hex64(value):
        raise BadRequestError(f"Invalid {field} format" if field else "Invalid hash format")
    return value


def require_text(value: str | None, *, field: str) -> str:
    if not value:
        raise BadRequestError(f"Missing required field: {field}")
    return value


def parse_timestamp(value: str, *, field: str) -> float:
    """Parse an ISO-8601 timestamp to epoch seconds; naive values are taken as UTC."""

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise BadRequestError(f"{field} must be an ISO-8601 timestamp") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def iso(ts: float | None) -> str | None:
    return None if ts is None else to_datetime(ts).isoformat()
