"""Environment backed defaults for create_app().

Values are read once per create_app() call so tests can override through the
config dict (or the environment) without reloading modules.
"""
from __future__ import annotations
import os
from typing import Any, Dict

DEFAULTS: Dict[str, Any] = {
    'DATABASE_URL': 'sqlite:///dev.db',
    'JWT_SECRET_KEY': 'dev-secret',
    'UPLOAD_FOLDER': os.path.abspath('uploads'),
    'MEDIA_URL_PREFIX': '/uploads',
    'MAX_MEDIA_FILES': 20,
    'ORDER_NUMBER_PREFIX': 'OR',
    'ORDER_NUMBER_ATTEMPTS': 5,
    'AUTO_CLOSE_WORKING_HOURS': 56,
    'BUSINESS_START_HOUR': 9,
    'BUSINESS_END_HOUR': 17,
    'BUSINESS_WEEKEND_DAYS': (5, 6),
    'BUSINESS_TZ': 'UTC',
    'AUTO_CLOSE_ENABLED': False,
    'AUTO_CLOSE_INTERVAL_MINUTES': 30,
    'NOTIFY_ASYNC': False,
    'LOG_LEVEL': 'INFO',
}

_INT_KEYS = (
    'MAX_MEDIA_FILES', 'ORDER_NUMBER_ATTEMPTS', 'AUTO_CLOSE_WORKING_HOURS',
    'BUSINESS_START_HOUR', 'BUSINESS_END_HOUR', 'AUTO_CLOSE_INTERVAL_MINUTES',
)
_BOOL_KEYS = ('AUTO_CLOSE_ENABLED', 'NOTIFY_ASYNC')


def _as_bool(raw) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')


def _as_days(raw):
    if isinstance(raw, (list, tuple, set)):
        return tuple(int(d) for d in raw)
    return tuple(int(d) for d in str(raw).split(',') if d.strip())


def load_settings(overrides: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Merge DEFAULTS <- environment <- overrides and coerce types.

    Raises ValueError on malformed numeric values so misconfiguration fails at startup.
    """
    values: Dict[str, Any] = {}
    for key, default in DEFAULTS.items():
        values[key] = os.getenv(key, default)
    if overrides:
        values.update(overrides)
    for key in _INT_KEYS:
        try:
            values[key] = int(values[key])
        except (TypeError, ValueError):
            raise ValueError(f'{key} must be an integer')
    for key in _BOOL_KEYS:
        values[key] = _as_bool(values[key])
    try:
        values['BUSINESS_WEEKEND_DAYS'] = _as_days(values['BUSINESS_WEEKEND_DAYS'])
    except ValueError:
        raise ValueError('BUSINESS_WEEKEND_DAYS must be a comma separated list of weekday numbers')
    if not 0 <= values['BUSINESS_START_HOUR'] < values['BUSINESS_END_HOUR'] <= 24:
        raise ValueError('BUSINESS_START_HOUR/BUSINESS_END_HOUR out of range')
    prefix = str(values['ORDER_NUMBER_PREFIX'])
    if len(prefix) != 2 or not prefix.isalpha():
        raise ValueError('ORDER_NUMBER_PREFIX must be two letters')
    values['ORDER_NUMBER_PREFIX'] = prefix.upper()
    return values

__all__ = ['DEFAULTS', 'load_settings']
