from __future__ import annotations
"""In-app notification sink and recipient resolution.

Delivery beyond the persisted Notification row (email, SMS, push) belongs to
external transports; the sink only records and logs. It never raises.
"""
import logging
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from orderflow.models.authz import User, ManagerBranch, ROLE_ADMIN, ROLE_DISPATCHER
from orderflow.models.notification import Notification

logger = logging.getLogger(__name__)

# Audience tokens understood by RecipientResolver
AUDIENCE_REQUESTER = 'requester'
AUDIENCE_ORDER_MANAGER = 'order_manager'
AUDIENCE_BRANCH_MANAGERS = 'branch_managers'
AUDIENCE_BRANCH_USERS = 'branch_users'
AUDIENCE_ADMINS = 'admins'
AUDIENCE_DISPATCHERS = 'dispatchers'
AUDIENCE_ALL_ACTIVE = 'all_active'
ALL_AUDIENCES = (
    AUDIENCE_REQUESTER, AUDIENCE_ORDER_MANAGER, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_BRANCH_USERS,
    AUDIENCE_ADMINS, AUDIENCE_DISPATCHERS, AUDIENCE_ALL_ACTIVE,
)


class RecipientResolver:
    """Turn audience tokens into user ids for one order."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def resolve(self, audiences: Iterable[str], branch_id: int, requester_id: int, manager_id: Optional[int]) -> List[int]:
        session = self._session_factory()
        ids: List[int] = []
        for audience in audiences:
            if audience not in ALL_AUDIENCES:
                raise ValueError(f'Unknown audience {audience}')
            if audience == AUDIENCE_REQUESTER:
                ids.append(requester_id)
            elif audience == AUDIENCE_ORDER_MANAGER:
                if manager_id:
                    ids.append(manager_id)
            elif audience == AUDIENCE_BRANCH_MANAGERS:
                ids.extend(session.execute(
                    select(ManagerBranch.manager_id).where(ManagerBranch.branch_id == branch_id, ManagerBranch.is_active.is_(True))
                ).scalars())
            elif audience == AUDIENCE_BRANCH_USERS:
                # peers of the requester; the requester is addressed explicitly
                ids.extend(session.execute(
                    select(User.id).where(User.branch_id == branch_id, User.is_active.is_(True), User.id != requester_id)
                ).scalars())
            elif audience == AUDIENCE_ADMINS:
                ids.extend(session.execute(
                    select(User.id).where(User.role == ROLE_ADMIN, User.is_active.is_(True))
                ).scalars())
            elif audience == AUDIENCE_DISPATCHERS:
                ids.extend(session.execute(
                    select(User.id).where(User.role == ROLE_DISPATCHER, User.is_active.is_(True))
                ).scalars())
            elif audience == AUDIENCE_ALL_ACTIVE:
                ids.extend(session.execute(select(User.id).where(User.is_active.is_(True))).scalars())
        return ids


class NotificationSink:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def notify_users(self, user_ids: Sequence[int], order_id: Optional[int], event_type: str, title: str, body: str) -> int:
        """Persist one notification per distinct active user. Returns rows written (0 on failure)."""
        ids = list(dict.fromkeys(u for u in user_ids if u))
        if not ids:
            return 0
        session = self._session_factory()
        try:
            active = set(session.execute(
                select(User.id).where(User.id.in_(ids), User.is_active.is_(True))
            ).scalars())
            written = 0
            for uid in ids:
                if uid not in active:
                    continue
                session.add(Notification(
                    user_id=uid,
                    order_id=order_id,
                    type=event_type,
                    title=title or event_type,
                    message=body or '',
                    is_read=False,
                ))
                written += 1
            session.commit()
        except Exception:
            session.rollback()
            logger.exception('notification %s for order %s could not be stored', event_type, order_id)
            return 0
        logger.info('notification %s for order %s sent to %d user(s)', event_type, order_id, written)
        return written

__all__ = [
    'NotificationSink', 'RecipientResolver', 'ALL_AUDIENCES',
    'AUDIENCE_REQUESTER', 'AUDIENCE_ORDER_MANAGER', 'AUDIENCE_BRANCH_MANAGERS', 'AUDIENCE_BRANCH_USERS',
    'AUDIENCE_ADMINS', 'AUDIENCE_DISPATCHERS', 'AUDIENCE_ALL_ACTIVE',
]
