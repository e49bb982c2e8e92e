from __future__ import annotations
"""Audit logging decorator for order routes.

Usage:

@audit_log('ORDER.APPROVE', entity='Order', entity_id_arg='order_id',
           pre_fetch=lambda a, kw: order_status_snapshot(kw.get('order_id')), diff_keys=['status'])
def approve_order(order_id): ...

Parameters:
  action: required audit action code (e.g. ORDER.APPROVE)
  entity: optional entity label (Order)
  entity_id_key: key in the returned ``data`` object whose value becomes entity_id.
  entity_id_arg: path parameter to use for entity_id when the key is absent.
  meta_keys: keys to project from ``data`` into the meta dict.
  diff_keys / pre_fetch: snapshot taken before the call; changed keys land in meta['changes'].

Return handling:
  Routes return ``(result_dict, status)`` where result_dict is an OperationResult
  dict. Only ``success: true`` responses are audited; the audit row gets its
  own commit and a failure there is logged, never raised.
"""

import logging
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional

from orderflow.services.audit import add_audit
from orderflow import get_db

logger = logging.getLogger(__name__)


def _extract_payload(rv: Any):
    """Return the JSON-able dict of a view return value."""
    if isinstance(rv, tuple) and rv:
        return rv[0]
    return rv


def audit_log(
    action: str,
    *,
    entity: Optional[str] = None,
    entity_id_key: Optional[str] = 'id',
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = ('orderNumber',),
    diff_keys: Optional[Iterable[str]] = None,
    pre_fetch: Optional[Callable[[tuple, dict], Optional[Dict[str, Any]]]] = None,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            before_snapshot = pre_fetch(args, kwargs) if (diff_keys and pre_fetch) else None
            rv = fn(*args, **kwargs)
            body = _extract_payload(rv)
            if not isinstance(body, dict) or not body.get('success'):
                return rv
            data = body.get('data') if isinstance(body.get('data'), dict) else {}
            try:
                entity_id = None
                if entity_id_key and entity_id_key in data:
                    entity_id = data.get(entity_id_key)
                elif entity_id_arg and entity_id_arg in kwargs:
                    entity_id = kwargs.get(entity_id_arg)
                meta = {k: data.get(k) for k in (meta_keys or ()) if k in data}
                if diff_keys and before_snapshot:
                    changes = {}
                    for k in diff_keys:
                        if before_snapshot.get(k) != data.get(k):
                            changes[k] = {'before': before_snapshot.get(k), 'after': data.get(k)}
                    if changes:
                        meta['changes'] = changes
                add_audit(action, entity, entity_id, meta)
                get_db().commit()
            except Exception:
                get_db().rollback()
                logger.exception('audit entry %s could not be stored', action)
            return rv
        return wrapper
    return outer
