# services/validation_service.py
"""
Input sanitizing for the JSON endpoints.

Bad input raises ``ConfigurationError`` so the blueprints answer 400 through
the shared error handler.
"""
import math
from datetime import datetime, timezone
from typing import Any, Optional

from services.errors import ConfigurationError


def sanitize_string(value: Any, max_length: int = 500) -> str:
    """
    Sanitize a string input by:
    - Stripping whitespace
    - Removing null bytes
    - Limiting length
    """
    if value is None:
        return ''
    value = str(value).strip().replace('\x00', '')
    return value[:max_length]


def sanitize_int(value: Any, min_val: int = None, max_val: int = None, default: int = 0) -> int:
    """
    Safely convert value to integer, clamped to the optional range.
    """
    try:
        result = int(value)
    except (ValueError, TypeError):
        return default
    if min_val is not None and result < min_val:
        return min_val
    if max_val is not None and result > max_val:
        return max_val
    return result


def require_int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ConfigurationError(f"{field} must be an integer", field=field)


def require_float(value: Any, field: str) -> float:
    """Finite number or ConfigurationError; booleans are rejected."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{field} must be a number", field=field)
    try:
        result = float(value)
    except (ValueError, TypeError):
        raise ConfigurationError(f"{field} must be a number", field=field)
    if not math.isfinite(result):
        raise ConfigurationError(f"{field} must be a finite number", field=field)
    return result


def parse_datetime(value: Optional[str], field: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        raise ConfigurationError(f"{field} must be an ISO-8601 timestamp", field=field)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def require_fields(data: dict, *fields: str):
    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise ConfigurationError(f"Missing required field(s): {', '.join(missing)}")
