from __future__ import annotations
from typing import Dict, Tuple
from flask import abort
from flask_jwt_extended import get_jwt, get_jwt_identity
from sqlalchemy import or_

from orderflow.models.authz import ALL_ROLES, ROLE_ADMIN, ROLE_BRANCH_USER, ROLE_DISPATCHER, ROLE_MANAGER, ROLE_PACKAGER
from orderflow.models.order import Order
from orderflow.services.lifecycle import Actor

# Work queue per role for GET /orders/pending
PENDING_STATUSES: Dict[str, Tuple[str, ...]] = {
    ROLE_MANAGER: (
        Order.STATUS_UNDER_REVIEW, Order.STATUS_WAITING_FOR_MANAGER_REPLY, Order.STATUS_RAISED_ISSUE,
        Order.STATUS_APPROVED_ORDER, Order.STATUS_PACKAGING_COMPLETED, Order.STATUS_CONFIRM_ORDER_RECEIVED,
    ),
    ROLE_ADMIN: (
        Order.STATUS_UNDER_REVIEW, Order.STATUS_WAITING_FOR_MANAGER_REPLY, Order.STATUS_RAISED_ISSUE,
        Order.STATUS_APPROVED_ORDER, Order.STATUS_PACKAGING_COMPLETED, Order.STATUS_CONFIRM_ORDER_RECEIVED,
    ),
    ROLE_PACKAGER: (Order.STATUS_APPROVED_ORDER, Order.STATUS_SENT_FOR_PACKAGING, Order.STATUS_UNDER_PACKAGING),
    ROLE_DISPATCHER: (Order.STATUS_PACKAGING_COMPLETED,),
    ROLE_BRANCH_USER: (
        Order.STATUS_CONFIRM_PENDING, Order.STATUS_MANAGER_REPLIED, Order.STATUS_APPROVED_ORDER,
        Order.STATUS_ARRANGING, Order.STATUS_ARRANGED, Order.STATUS_IN_TRANSIT,
    ),
}


def current_actor() -> Actor:
    """Build the Actor from the verified token (subject + role + branch_ids claims)."""
    claims = get_jwt()
    role = claims.get('role', '')
    if role not in ALL_ROLES:
        abort(403, description='Unknown role')
    branch_ids = tuple(int(b) for b in (claims.get('branch_ids') or []))
    return Actor(id=int(get_jwt_identity()), role=role, branch_ids=branch_ids)


def filter_visible_orders(query, actor: Actor):
    """Restrict an Order query to what the actor may read."""
    if actor.role in (ROLE_ADMIN, ROLE_PACKAGER, ROLE_DISPATCHER):
        return query
    clauses = [Order.requester_id == actor.id, Order.manager_id == actor.id]
    if actor.branch_ids:
        clauses.append(Order.branch_id.in_(actor.branch_ids))
    return query.filter(or_(*clauses))


def filter_query_by_branches(query, model_branch_column, branch_ids):
    """Return query filtered by branch ids if list not empty."""
    if branch_ids:
        return query.where(model_branch_column.in_(branch_ids))
    return query

__all__ = ['PENDING_STATUSES', 'current_actor', 'filter_visible_orders', 'filter_query_by_branches']
