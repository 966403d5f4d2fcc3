"""
Datetime utility functions for call-log timestamps
"""
from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Epoch values above this are milliseconds (OpenMHz), below are seconds (Broadcastify)
_MS_THRESHOLD = 10_000_000_000


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def parse_call_time(value) -> Optional[datetime]:
    """
    Convert a call-log timestamp to an aware datetime

    Handles multiple cases:
    - None -> None
    - Already datetime -> made UTC-aware if naive
    - int/float epoch seconds or milliseconds
    - Numeric string -> epoch
    - ISO 8601 string (with trailing Z) -> parsed
    - Other -> None with warning

    Args:
        value: Raw timestamp from an API payload

    Returns:
        Aware datetime or None
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > _MS_THRESHOLD else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str):
        stripped = value.strip()
        if stripped.replace('.', '', 1).isdigit():
            return parse_call_time(float(stripped))
        try:
            parsed = datetime.fromisoformat(stripped.replace('Z', '+00:00'))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError as e:
            logger.warning(f"Failed to parse datetime string '{value}': {e}")
            return None

    logger.warning(f"Cannot convert {type(value)} to datetime: {value}")
    return None


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)
