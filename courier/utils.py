"""
Utility functions shared by the ingester, sender and routes.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from courier.errors import ValidationError

logger = logging.getLogger(__name__)

_PHONE_NOISE = re.compile(r"[\s\-().+]")


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with microseconds and a Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def unix_to_iso(value: Any) -> Optional[str]:
    """
    Convert a provider unix timestamp (seconds, int or numeric string) to
    the ISO-8601 format used for stored timestamps.

    Returns None when the value is absent or not numeric.
    """
    if value is None:
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric provider timestamp: {value!r}")
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def normalize_phone(phone: Optional[str]) -> str:
    """
    Normalize a phone number to digits only.

    "+91 98765-43210" -> "919876543210"

    Raises:
        ValidationError: if nothing but digits remains after stripping
            spaces, dashes, parentheses, dots and a leading '+'.
    """
    if phone is None:
        raise ValidationError("Contact number is required")
    normalized = _PHONE_NOISE.sub("", str(phone))
    if not normalized:
        raise ValidationError("Contact number is required")
    if not normalized.isdigit():
        raise ValidationError(f"Invalid contact number: {phone}")
    return normalized


def parse_positive_int(value: Any, default: int) -> int:
    """
    Parse a query value as a positive integer, falling back to `default`
    when it is absent, non-numeric, zero or negative.
    """
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default
