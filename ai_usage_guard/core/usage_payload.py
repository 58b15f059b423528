"""
Usage payload decoding.

Converts the JSON returned by the usage endpoint into a UsageSnapshot.
Fetching the payload is left to the caller.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ai_usage_guard.storage.db import parse_timestamp, to_utc
from ai_usage_guard.storage.models import UsageSnapshot

STATUS_CODES = {
    "within_limit": 0,
    "approaching_limit": 1,
    "exceeded_limit": 2,
}


class UsagePayloadError(Exception):
    """Raised when a usage payload cannot be decoded."""


def parse_usage_payload(text: str, now: Optional[datetime] = None) -> UsageSnapshot:
    """Decode a usage payload.

    Expected shape::

        {"five_hour": {"utilization": 15, "resets_at": "...", "status": "within_limit",
                       "limit": 100, "remaining": 85},
         "seven_day": {...}}

    Args:
        text: Raw JSON text
        now: Snapshot timestamp (defaults to the system clock)

    Returns:
        UsageSnapshot holding the raw text for auditing

    Raises:
        UsagePayloadError: If the text is not a JSON object or reports an error
    """
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as e:
        raise UsagePayloadError(f"Invalid usage payload: {e}")
    if not isinstance(payload, dict):
        raise UsagePayloadError("Usage payload must be a JSON object")
    if "__error" in payload:
        raise UsagePayloadError(str(payload["__error"]))

    short = _section(payload, "five_hour")
    long = _section(payload, "seven_day")

    return UsageSnapshot(
        timestamp=to_utc(now) if now is not None else datetime.now(timezone.utc),
        short_window_percent=_number(short.get("utilization")),
        long_window_percent=_number(long.get("utilization")),
        short_window_resets_at=parse_timestamp(short.get("resets_at")),
        long_window_resets_at=parse_timestamp(long.get("resets_at")),
        short_window_status=_status(short),
        long_window_status=_status(long),
        short_window_limit=_number(short.get("limit")),
        short_window_remaining=_number(short.get("remaining")),
        long_window_limit=_number(long.get("limit")),
        long_window_remaining=_number(long.get("remaining")),
        raw_json=text,
    )


def _section(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _status(section: Dict[str, Any]) -> Optional[int]:
    status = section.get("status")
    return STATUS_CODES.get(status) if isinstance(status, str) else None
