from __future__ import annotations
from typing import Any, Dict, Optional
from flask_jwt_extended import get_jwt_identity, get_jwt
from orderflow import get_db
from orderflow.models.audit import AuditLog


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None):
    """Stage an audit log entry in the current DB session.

    Parameters:
      action: short action code e.g. ORDER.APPROVE, ORDER.DISPATCH
      entity: optional entity name (Order)
      entity_id: optional primary key string
      meta: additional JSON-safe dictionary (status diff, order number)
    """
    session = get_db()
    claims = get_jwt() or {}
    ident = get_jwt_identity()
    log = AuditLog(
        actor_user_id=int(ident) if ident is not None else 0,
        actor_role=claims.get('role'),
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=dict(meta or {}),
    )
    session.add(log)
    # No commit here; caller's transaction boundary controls durability.
    return log
