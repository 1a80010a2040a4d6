"""Utility functions for the sync engine."""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

_LIST_NAME_NOISE = re.compile(r"[\s\-_.]+")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Interpret naive datetimes as local time and attach the offset."""
    if value is None or value.tzinfo is not None:
        return value
    return value.astimezone()


def format_remote_timestamp(value: datetime) -> str:
    """Render a datetime the way Planka expects it (UTC, millisecond Z form)."""
    aware = ensure_aware(value)
    return aware.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    """Generate a stable local identifier. Never reused."""
    return uuid.uuid4().hex


def normalize_list_name(name: str) -> str:
    """
    Normalize a board list name for classification.

    Case, whitespace, dashes, underscores and dots are ignored, so
    "To Do", "to-do" and " TODO " all normalize to "todo".
    """
    return _LIST_NAME_NOISE.sub("", name).casefold()


def mask_bearer(value: str) -> str:
    """
    Mask an Authorization header value for diagnostics.

    Keeps the first 6 and last 4 characters of a bearer token; tokens
    shorter than 12 characters are hidden entirely.
    """
    for prefix in ("Bearer ", "bearer "):
        if value.startswith(prefix):
            token = value[len(prefix):]
            if len(token) < 12:
                return "Bearer *****"
            return f"Bearer {token[:6]}…{token[-4:]}"
    return "*****"


def redact_payload(data: Any, secret_keys: frozenset[str]) -> Any:
    """Return a copy of a JSON-like payload with secret values replaced."""
    if isinstance(data, dict):
        return {
            key: "***" if key in secret_keys else redact_payload(value, secret_keys)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_payload(item, secret_keys) for item in data]
    return data


def truncate(text: str, limit: int) -> str:
    """Shorten long bodies for the diagnostics log."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}…(+{len(text) - limit} bytes)"
