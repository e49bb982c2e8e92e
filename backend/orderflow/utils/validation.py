from __future__ import annotations
"""Payload validation helpers shared by order operations.

All helpers raise OrderValidationError with a human readable message and
return the cleaned value to enable inline usage.
"""
from datetime import datetime
from typing import Any, Iterable, Mapping

from orderflow.errors import OrderValidationError
from orderflow.utils.working_hours import as_utc


def validate_status(new_status: Any, allowed: Iterable[str], field_name: str = 'status') -> str:
    """Validate that new_status is one of allowed."""
    if not isinstance(new_status, str) or new_status not in allowed:
        raise OrderValidationError(f'{field_name} invalid')
    return new_status


def as_payload(payload: Any) -> Mapping[str, Any]:
    """Treat a missing body as empty; anything but an object is rejected."""
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise OrderValidationError('Request body must be a JSON object')
    return payload


def _coerce_int(value: Any, message: str) -> int:
    if isinstance(value, bool):
        raise OrderValidationError(message)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit() or (text[:1] == '-' and text[1:].isdigit()):
            return int(text)
    raise OrderValidationError(message)


def positive_int(value: Any, field_name: str) -> int:
    number = _coerce_int(value, f'{field_name} must be a positive integer')
    if number <= 0:
        raise OrderValidationError(f'{field_name} must be a positive integer')
    return number


def non_negative_int(value: Any, field_name: str) -> int:
    number = _coerce_int(value, f'{field_name} must be an integer')
    if number < 0:
        raise OrderValidationError(f'{field_name} cannot be negative')
    return number


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Accept datetime or ISO-8601 string (``Z`` suffix allowed); return UTC aware."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise OrderValidationError(f'{field_name} must be an ISO-8601 timestamp')
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise OrderValidationError(f'{field_name} must be an ISO-8601 timestamp')
    return as_utc(parsed)

__all__ = ['validate_status', 'positive_int', 'non_negative_int', 'parse_timestamp']
