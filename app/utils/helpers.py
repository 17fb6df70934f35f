"""
Helper Functions
================

Common utility functions used across the application.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional, Union

ANONYMOUS_ID_MARKER = "RCAnonymousID:"


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (``Z`` suffix allowed), epoch milliseconds and
    datetimes. Anything unparseable yields None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_email(value: Any) -> Optional[str]:
    """Trimmed, lower-cased email, or None if the value is not email-shaped."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or "@" not in trimmed:
        return None
    return trimmed.lower()


def is_anonymous_app_user_id(value: Any) -> bool:
    """RevenueCat assigns ``$RCAnonymousID:...`` ids before login."""
    return isinstance(value, str) and value.lstrip("$").startswith(ANONYMOUS_ID_MARKER)


def hash_value(value: Union[str, dict, list, None]) -> Optional[str]:
    """SHA-256 hex digest of a string or JSON-serializable value."""
    if value is None:
        return None
    normalized = value if isinstance(value, str) else json.dumps(
        value, sort_keys=True, default=str
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Keep just enough of a secret to tell two values apart in logs."""
    if not value:
        return None
    if len(value) <= 10:
        return f"{value[:3]}***"
    return f"{value[:4]}***{value[-4:]}"


def preview_json(payload: Any, limit: int = 2000) -> str:
    """Bounded JSON rendering for log lines."""
    try:
        serialized = json.dumps(payload, default=str)
    except (TypeError, ValueError) as exc:
        return f"[unserializable:{exc}]"
    if len(serialized) <= limit:
        return serialized
    return f"{serialized[:limit]}... (len={len(serialized)})"
