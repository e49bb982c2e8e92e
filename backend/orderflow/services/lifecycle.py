from __future__ import annotations
"""Order lifecycle engine.

Every public operation loads the order, checks role, state, scope and payload
(in that order), then moves the status with a conditional UPDATE so a
concurrent writer loses with a stale-precondition failure instead of
overwriting. Notifications and stock deductions are queued on an outbox and
handed to the dispatcher only after the transaction commits.

Usage:
    engine = get_engine()
    result = engine.approve(actor, order_id, {'items': [{'sku': 'A', 'qtyApproved': 3}]})
    return result.to_dict(), result.http_status
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from orderflow.config.settings import DEFAULTS
from orderflow.errors import (
    HTTP_STATUS_BY_KIND, InsufficientStockError, OrderAuthorizationError, OrderError,
    OrderNotFoundError, OrderStateError, OrderValidationError, StalePreconditionError,
)
from orderflow.models.authz import (
    Branch, ROLE_ADMIN, ROLE_BRANCH_USER, ROLE_DISPATCHER, ROLE_MANAGER, ROLE_PACKAGER, ROLE_SYSTEM,
)
from orderflow.models.order import Order, OrderItem, OrderIssue, ReceivedIssue, Tracking
from orderflow.services import issues as issue_protocol
from orderflow.services.events import NotifyEvent, OrderRef, StockDeductionEvent
from orderflow.services.notifications import (
    AUDIENCE_ADMINS, AUDIENCE_ALL_ACTIVE, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_BRANCH_USERS,
    AUDIENCE_DISPATCHERS, AUDIENCE_ORDER_MANAGER, AUDIENCE_REQUESTER,
)
from orderflow.services.serializers import issue_json, order_json, received_issue_json
from orderflow.services.stock_ledger import RESERVE_OK
from orderflow.utils.fsm import Transition, TransitionValidator
from orderflow.utils.validation import as_payload, non_negative_int, parse_timestamp, positive_int, validate_status
from orderflow.utils.working_hours import WorkingCalendar, as_utc

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
ORDER_NUMBER_LENGTH = 6


@dataclass(frozen=True)
class Actor:
    """Verified caller supplied by the auth layer."""
    id: int
    role: str
    branch_ids: Tuple[int, ...] = ()

    @property
    def label(self) -> str:
        return f'{self.role}:{self.id}'


SYSTEM_ACTOR = Actor(id=0, role=ROLE_SYSTEM)


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        return HTTP_STATUS_BY_KIND.get(self.error, 400)

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {'success': self.success}
        if self.data is not None:
            out['data'] = self.data
        if self.message:
            out['message'] = self.message
        if self.error:
            out['error'] = self.error
        return out


# --- Transition table ---
S = Order
MANAGER_ROLES = frozenset({ROLE_MANAGER, ROLE_ADMIN})
REQUESTER_ROLES = frozenset({ROLE_BRANCH_USER, ROLE_MANAGER, ROLE_ADMIN})
ARRANGING_ROLES = frozenset({ROLE_BRANCH_USER, ROLE_MANAGER, ROLE_ADMIN})
PACKAGING_ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_PACKAGER})
DISPATCH_ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_DISPATCHER})
CLOSE_ROLES = frozenset({ROLE_MANAGER, ROLE_ADMIN, ROLE_SYSTEM})
# roles whose reach is not limited to their own branches
GLOBAL_ROLES = frozenset({ROLE_ADMIN, ROLE_PACKAGER, ROLE_DISPATCHER, ROLE_SYSTEM})

ORDER_FSM = TransitionValidator([
    Transition(None, S.STATUS_UNDER_REVIEW, REQUESTER_ROLES, via='create'),
    Transition(S.STATUS_UNDER_REVIEW, S.STATUS_CONFIRM_PENDING, MANAGER_ROLES, via='approve'),
    Transition(S.STATUS_CONFIRM_PENDING, S.STATUS_APPROVED_ORDER, REQUESTER_ROLES, requester_only=True, via='confirm'),
    Transition(S.STATUS_CONFIRM_PENDING, S.STATUS_WAITING_FOR_MANAGER_REPLY, REQUESTER_ROLES, requester_only=True, via='raise_issue'),
    Transition(S.STATUS_WAITING_FOR_MANAGER_REPLY, S.STATUS_MANAGER_REPLIED, MANAGER_ROLES, via='reply'),
    Transition(S.STATUS_MANAGER_REPLIED, S.STATUS_WAITING_FOR_MANAGER_REPLY, REQUESTER_ROLES, requester_only=True, via='raise_issue'),
    Transition(S.STATUS_MANAGER_REPLIED, S.STATUS_APPROVED_ORDER, REQUESTER_ROLES, requester_only=True, via='confirm_manager_reply'),
    Transition(S.STATUS_APPROVED_ORDER, S.STATUS_ARRANGING, ARRANGING_ROLES, via='update_arranging_stage'),
    Transition(S.STATUS_APPROVED_ORDER, S.STATUS_UNDER_PACKAGING, PACKAGING_ROLES, via='update_status'),
    Transition(S.STATUS_ARRANGING, S.STATUS_ARRANGED, ARRANGING_ROLES, via='update_arranging_stage'),
    Transition(S.STATUS_ARRANGED, S.STATUS_SENT_FOR_PACKAGING, ARRANGING_ROLES, via='update_arranging_stage'),
    Transition(S.STATUS_SENT_FOR_PACKAGING, S.STATUS_UNDER_PACKAGING, PACKAGING_ROLES, via='update_status'),
    Transition(S.STATUS_UNDER_PACKAGING, S.STATUS_PACKAGING_COMPLETED, PACKAGING_ROLES, via='update_status'),
    Transition(S.STATUS_PACKAGING_COMPLETED, S.STATUS_IN_TRANSIT, DISPATCH_ROLES, via='dispatch'),
    Transition(S.STATUS_IN_TRANSIT, S.STATUS_RAISED_ISSUE, REQUESTER_ROLES, requester_only=True, via='raise_issue'),
    Transition(S.STATUS_IN_TRANSIT, S.STATUS_CONFIRM_ORDER_RECEIVED, REQUESTER_ROLES, requester_only=True, via='confirm_received'),
    Transition(S.STATUS_RAISED_ISSUE, S.STATUS_CONFIRM_ORDER_RECEIVED, REQUESTER_ROLES, requester_only=True, via='confirm_received'),
    Transition(S.STATUS_CONFIRM_ORDER_RECEIVED, S.STATUS_CLOSED_ORDER, CLOSE_ROLES, via='close'),
])

# targets update_status accepts; the rest have dedicated operations
GENERIC_TARGETS = Order.ARRANGING_STAGES + Order.PACKAGING_STAGES + (S.STATUS_IN_TRANSIT,)
AFTER_ARRANGING = (
    S.STATUS_UNDER_PACKAGING, S.STATUS_PACKAGING_COMPLETED, S.STATUS_IN_TRANSIT, S.STATUS_RAISED_ISSUE,
    S.STATUS_CONFIRM_ORDER_RECEIVED, S.STATUS_CLOSED_ORDER,
)
RAISE_TARGETS = {
    S.STATUS_CONFIRM_PENDING: S.STATUS_WAITING_FOR_MANAGER_REPLY,
    S.STATUS_MANAGER_REPLIED: S.STATUS_WAITING_FOR_MANAGER_REPLY,
    S.STATUS_IN_TRANSIT: S.STATUS_RAISED_ISSUE,
}

STAMP_BY_TARGET = {
    S.STATUS_CONFIRM_PENDING: 'approved_at',
    S.STATUS_ARRANGING: 'arranging_started_at',
    S.STATUS_ARRANGED: 'arranging_completed_at',
    S.STATUS_SENT_FOR_PACKAGING: 'sent_for_packaging_at',
    S.STATUS_UNDER_PACKAGING: 'packaging_started_at',
    S.STATUS_PACKAGING_COMPLETED: 'packaging_completed_at',
    S.STATUS_IN_TRANSIT: 'dispatched_at',
    S.STATUS_CONFIRM_ORDER_RECEIVED: 'received_at',
    S.STATUS_CLOSED_ORDER: 'closed_at',
}
MEDIA_FIELD_BY_TARGET = {
    S.STATUS_ARRANGING: 'arranging_media',
    S.STATUS_ARRANGED: 'arranging_media',
    S.STATUS_SENT_FOR_PACKAGING: 'arranging_media',
    S.STATUS_UNDER_PACKAGING: 'packaging_media',
    S.STATUS_PACKAGING_COMPLETED: 'packaging_media',
    S.STATUS_IN_TRANSIT: 'transit_media',
    S.STATUS_CONFIRM_ORDER_RECEIVED: 'received_media',
}

# (event_type, title, body, audiences) announced on entering a status
ANNOUNCEMENTS: Dict[str, List[Tuple[str, str, str, Tuple[str, ...]]]] = {
    S.STATUS_UNDER_REVIEW: [
        ('ORDER_CREATED', 'New Order Created', 'Order {number} was placed and is awaiting review.',
         (AUDIENCE_REQUESTER, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_BRANCH_USERS, AUDIENCE_ADMINS)),
    ],
    S.STATUS_CONFIRM_PENDING: [
        ('ORDER_CONFIRM_PENDING', 'Order Approval Pending Confirmation',
         'Your order {number} has been approved and is waiting for your confirmation.', (AUDIENCE_REQUESTER,)),
    ],
    S.STATUS_APPROVED_ORDER: [
        ('ORDER_CONFIRMED', 'Order Confirmed', 'Order {number} was confirmed by the branch.',
         (AUDIENCE_ORDER_MANAGER, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_ADMINS)),
        ('ORDER_APPROVED_CONFIRMED', 'Order Approved', 'Order {number} is approved and ready for arranging.',
         (AUDIENCE_REQUESTER, AUDIENCE_BRANCH_USERS)),
    ],
    S.STATUS_ARRANGING: [
        ('ORDER_ARRANGING', 'Arranging Started', 'Items for order {number} are being arranged.',
         (AUDIENCE_REQUESTER, AUDIENCE_ORDER_MANAGER)),
    ],
    S.STATUS_ARRANGED: [
        ('ORDER_ARRANGED', 'Order Arranged', 'Items for order {number} have been arranged.',
         (AUDIENCE_REQUESTER, AUDIENCE_ORDER_MANAGER)),
    ],
    S.STATUS_SENT_FOR_PACKAGING: [
        ('ORDER_SENT_FOR_PACKAGING', 'Sent For Packaging', 'Order {number} was sent for packaging.', (AUDIENCE_REQUESTER,)),
        ('PACKAGING_STAGE_STARTED', 'Packaging Stage Started', 'Order {number} has entered the packaging stage.',
         (AUDIENCE_ORDER_MANAGER, AUDIENCE_BRANCH_MANAGERS)),
    ],
    S.STATUS_UNDER_PACKAGING: [
        ('ORDER_UNDER_PACKAGING', 'Packaging Started', 'Order {number} is being packed.',
         (AUDIENCE_REQUESTER, AUDIENCE_ORDER_MANAGER)),
    ],
    S.STATUS_PACKAGING_COMPLETED: [
        ('ORDER_PACKAGING_COMPLETED', 'Packaging Completed', 'Order {number} is packed and ready for dispatch.',
         (AUDIENCE_ORDER_MANAGER, AUDIENCE_DISPATCHERS)),
    ],
    S.STATUS_IN_TRANSIT: [
        ('ORDER_DISPATCHED', 'Order Dispatched', 'Order {number} has been dispatched and is in transit.',
         (AUDIENCE_REQUESTER, AUDIENCE_ORDER_MANAGER)),
    ],
    S.STATUS_CONFIRM_ORDER_RECEIVED: [
        ('ORDER_RECEIVED', 'Order Received', 'Order {number} was received by the branch.',
         (AUDIENCE_REQUESTER, AUDIENCE_ORDER_MANAGER, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_DISPATCHERS)),
    ],
    S.STATUS_CLOSED_ORDER: [
        ('ORDER_CLOSED', 'Order Closed', 'Order {number} has been closed.', (AUDIENCE_ALL_ACTIVE,)),
    ],
}
ISSUE_AUDIENCES = (AUDIENCE_ORDER_MANAGER, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_ADMINS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def operation(success_message: str):
    """Run an engine method as one transaction and fold domain errors into an OperationResult.

    The wrapped method returns the Order it worked on (serialized here) or an
    already serialized payload. Queued events are dispatched only after commit.
    """
    def outer(fn):
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            self._outbox = []
            try:
                out = fn(self, *args, **kwargs)
                self.session.commit()
            except OrderError as exc:
                self.session.rollback()
                self._outbox = []
                logger.warning('%s rejected (%s): %s', fn.__name__, exc.kind, exc.message)
                return OperationResult(False, message=exc.message, error=exc.kind)
            except Exception:
                self.session.rollback()
                self._outbox = []
                raise
            data = order_json(out) if isinstance(out, Order) else out
            events, self._outbox = self._outbox, []
            self.dispatcher.dispatch(events)
            return OperationResult(True, data=data, message=success_message)
        return wrapper
    return outer


class OrderLifecycleEngine:
    fsm = ORDER_FSM

    def __init__(self, session: Session, ledger, dispatcher, calendar: Optional[WorkingCalendar] = None,
                 settings: Optional[Mapping[str, Any]] = None, clock: Optional[Callable[[], datetime]] = None):
        self.session = session
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.calendar = calendar or WorkingCalendar()
        self.settings = settings or DEFAULTS
        self.clock = clock or utcnow
        self._outbox: List[object] = []

    # ---------------- helpers ---------------- #
    def _now(self) -> datetime:
        return as_utc(self.clock())

    def _setting(self, key: str):
        return self.settings.get(key, DEFAULTS[key])

    def _load(self, order_id: int, requester: Optional[Actor] = None) -> Order:
        order = self.session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError('Order not found')
        if requester is not None and order.requester_id != requester.id:
            raise OrderNotFoundError('Order not found')
        return order

    def _assert_branch_scope(self, actor: Actor, order: Order):
        if actor.role in GLOBAL_ROLES:
            return
        if order.branch_id not in actor.branch_ids:
            raise OrderAuthorizationError('Branch access denied')

    def _can_view(self, actor: Actor, order: Order) -> bool:
        if actor.role in GLOBAL_ROLES:
            return True
        if order.requester_id == actor.id or order.manager_id == actor.id:
            return True
        return order.branch_id in actor.branch_ids

    def _authorize(self, actor: Actor, order: Order, target: str) -> Transition:
        self.fsm.assert_role_allowed(target, actor.role)
        edge = self.fsm.assert_can_transition(order.status, target)
        if not edge.requester_only:
            self._assert_branch_scope(actor, order)
        return edge

    def _authorize_from(self, actor: Actor, order: Order, source: str, target: str) -> Transition:
        """Like _authorize, for operations that own only one of several edges into target."""
        self.fsm.assert_role_allowed(target, actor.role)
        if order.status != source:
            raise OrderStateError(f'Invalid transition: {order.status} → {target}')
        return self._authorize(actor, order, target)

    def _guard(self, order: Order, expected: str, target: str):
        """Conditional status write; zero rows means someone else moved the order first."""
        result = self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StalePreconditionError(f'Order {order.order_number} is no longer {expected}')
        set_committed_value(order, 'status', target)

    def _media_field(self, target: str, media: Sequence[str]) -> Optional[str]:
        if not media:
            return None
        field_name = MEDIA_FIELD_BY_TARGET.get(target)
        if field_name is None:
            raise OrderValidationError(f'Media cannot be attached when moving to {target}')
        return field_name

    def _apply(self, actor: Actor, order: Order, target: str, media: Sequence[str] = ()) -> datetime:
        """Guard + stamp + media append for a transition already authorized and validated."""
        source = order.status
        media_field = self._media_field(target, media)
        self._guard(order, source, target)
        now = self._now()
        stamp = STAMP_BY_TARGET.get(target)
        if stamp:
            setattr(order, stamp, now)
        if media_field:
            setattr(order, media_field, list(getattr(order, media_field) or []) + list(media))
        if target in Order.ARRANGING_STAGES:
            order.arranging_stage = target
        logger.info('order %s %s -> %s by %s', order.order_number, source, target, actor.label)
        return now

    def _notify(self, order: Order, event_type: str, title: str, body: str, audiences: Iterable[str]):
        self._outbox.append(NotifyEvent(OrderRef.of(order), event_type, title, body, tuple(audiences)))

    def _announce(self, order: Order, status: str):
        for event_type, title, body, audiences in ANNOUNCEMENTS.get(status, ()):
            self._notify(order, event_type, title, body.format(number=order.order_number), audiences)

    def _items_by_id(self, order: Order, item_ids: Iterable[Optional[int]]) -> Dict[int, OrderItem]:
        items = {i.id: i for i in order.items}
        for item_id in item_ids:
            if item_id is not None and item_id not in items:
                raise OrderValidationError(f'Item {item_id} does not belong to order {order.order_number}')
        return items

    @staticmethod
    def _sender_role(actor: Actor) -> str:
        if actor.role not in OrderIssue.ALL_SENDERS:
            raise OrderAuthorizationError(f'Role {actor.role} cannot post to the issue thread')
        return actor.role

    @staticmethod
    def _recompute_value(order: Order):
        order.total_value_cents = sum(i.total_price_cents or 0 for i in order.items if not i.out_of_stock)

    @staticmethod
    def _set_approved_qty(item: OrderItem, qty: int):
        item.qty_approved = qty
        if not item.out_of_stock:
            item.total_price_cents = qty * (item.unit_price_cents or 0)

    def _next_order_number(self) -> str:
        prefix = self._setting('ORDER_NUMBER_PREFIX')
        for _ in range(self._setting('ORDER_NUMBER_ATTEMPTS')):
            candidate = prefix + ''.join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(ORDER_NUMBER_LENGTH))
            taken = self.session.execute(select(Order.id).where(Order.order_number == candidate)).first()
            if taken is None:
                return candidate
            logger.warning('order number collision on %s, regenerating', candidate)
        raise OrderValidationError('Could not allocate a unique order number, please retry')

    @staticmethod
    def _collect_lines(raw: Any, label: str) -> Dict[str, int]:
        if raw is None:
            return {}
        if not isinstance(raw, list):
            raise OrderValidationError(f'{label} must be a list')
        lines: Dict[str, int] = {}
        for entry in raw:
            if not isinstance(entry, dict):
                raise OrderValidationError(f'{label} entries must be objects with sku and quantity')
            sku = str(entry.get('sku') or '').strip()
            if not sku:
                raise OrderValidationError('sku is required for every item')
            qty = positive_int(entry.get('quantity', entry.get('qty')), f'quantity for {sku}')
            lines[sku] = lines.get(sku, 0) + qty
        return lines

    # ---------------- operations ---------------- #
    @operation('Order created successfully')
    def create(self, actor: Actor, payload: Mapping[str, Any]):
        self.fsm.assert_role_allowed(Order.STATUS_UNDER_REVIEW, actor.role)
        payload = as_payload(payload)
        branch_id = payload.get('branchId')
        if branch_id in (None, ''):
            if not actor.branch_ids:
                raise OrderValidationError('branchId is required')
            branch_id = actor.branch_ids[0]
        branch_id = positive_int(branch_id, 'branchId')
        if actor.role != ROLE_ADMIN and branch_id not in actor.branch_ids:
            raise OrderAuthorizationError('Branch access denied')
        branch = self.session.get(Branch, branch_id)
        if branch is None or not branch.is_active:
            raise OrderValidationError(f'Branch {branch_id} not found or inactive')

        in_stock = self._collect_lines(payload.get('inStockItems'), 'inStockItems')
        for sku, qty in self._collect_lines(payload.get('items'), 'items').items():
            in_stock[sku] = in_stock.get(sku, 0) + qty
        out_of_stock = self._collect_lines(payload.get('outOfStockItems'), 'outOfStockItems')
        if not in_stock and not out_of_stock:
            raise OrderValidationError('Order must contain at least one item')
        both = sorted(set(in_stock) & set(out_of_stock))
        if both:
            raise OrderValidationError(f'SKU {both[0]} is listed both in stock and out of stock')

        catalog = self.ledger.find_active(list(in_stock) + list(out_of_stock))
        for sku in list(in_stock) + list(out_of_stock):
            if sku not in catalog:
                raise OrderValidationError(f'Item {sku} not found or inactive')
        for sku, qty in in_stock.items():
            if self.ledger.reserve_stock(sku, qty) != RESERVE_OK:
                entry = self.ledger.find_by_sku(sku) or catalog[sku]
                raise InsufficientStockError(sku, entry.stock, qty, entry.name)

        order = Order(
            order_number=self._next_order_number(),
            status=Order.STATUS_UNDER_REVIEW,
            remarks=(payload.get('remarks') or '').strip() or None,
            branch_id=branch_id,
            requester_id=actor.id,
            requested_at=self._now(),
            arranging_media=[], packaging_media=[], transit_media=[], received_media=[],
        )
        for sku, qty in in_stock.items():
            price = catalog[sku].price_cents
            order.items.append(OrderItem(sku=sku, qty_requested=qty, unit_price_cents=price,
                                         total_price_cents=price * qty, out_of_stock=False))
        for sku, qty in out_of_stock.items():
            order.items.append(OrderItem(sku=sku, qty_requested=qty, out_of_stock=True))
        order.total_items = sum(in_stock.values()) + sum(out_of_stock.values())
        self._recompute_value(order)
        self.session.add(order)
        self.session.flush()
        logger.info('order %s created by %s with %d line(s)', order.order_number, actor.label, len(order.items))
        self._announce(order, Order.STATUS_UNDER_REVIEW)
        return order

    @operation('Order approved successfully')
    def approve(self, actor: Actor, order_id: int, payload: Any):
        order = self._load(order_id)
        target = Order.STATUS_CONFIRM_PENDING
        self._authorize(actor, order, target)
        entries = payload.get('items', payload.get('approvedItems')) if isinstance(payload, dict) else payload
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise OrderValidationError('items must be a list of {sku, qtyApproved}')
        by_sku = {i.sku: i for i in order.items}
        approved: Dict[str, int] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                raise OrderValidationError('items must be a list of {sku, qtyApproved}')
            sku = str(entry.get('sku') or '').strip()
            if sku not in by_sku:
                raise OrderValidationError(f'Order item with SKU {sku} not found')
            if sku in approved:
                raise OrderValidationError(f'SKU {sku} approved twice')
            approved[sku] = non_negative_int(entry.get('qtyApproved'), f'Approved quantity for SKU {sku}')

        self._apply(actor, order, target)
        order.manager_id = actor.id
        for sku, qty in approved.items():
            item = by_sku[sku]
            if qty > item.qty_requested:
                logger.info('order %s: %s increased %s from %d to %d', order.order_number, actor.label, sku, item.qty_requested, qty)
            self._set_approved_qty(item, qty)
        self._recompute_value(order)
        self._announce(order, target)
        return order

    @operation('Order confirmed successfully')
    def confirm(self, actor: Actor, order_id: int):
        order = self._load(order_id, requester=actor)
        target = Order.STATUS_APPROVED_ORDER
        self._authorize_from(actor, order, Order.STATUS_CONFIRM_PENDING, target)
        self._apply(actor, order, target)
        self._announce(order, target)
        return order

    def _check_arranging_change(self, order: Order, target: str):
        if target in Order.ARRANGING_STAGES and order.status in AFTER_ARRANGING:
            raise OrderStateError(f'Cannot change arranging stage once the order is {order.status}')

    def _advance(self, actor: Actor, order: Order, target: str, media: Sequence[str] = (),
                 tracking: Optional[Mapping[str, Any]] = None, expected_delivery: Any = None,
                 require_tracking_id: bool = False):
        """Shared path for the arranging, packaging and dispatch edges."""
        self.fsm.assert_role_allowed(target, actor.role)
        self._check_arranging_change(order, target)
        self._authorize(actor, order, target)
        expected = None
        if expected_delivery not in (None, ''):
            if target != Order.STATUS_IN_TRANSIT:
                raise OrderValidationError('expectedDeliveryTime only applies when dispatching')
            expected = parse_timestamp(expected_delivery, 'expectedDeliveryTime')
            if expected < self._now():
                raise OrderValidationError('Expected delivery time cannot be in the past')
        if require_tracking_id and not (tracking or {}).get('trackingId'):
            raise OrderValidationError('trackingId is required')
        if tracking and target != Order.STATUS_IN_TRANSIT:
            raise OrderValidationError('trackingDetails only apply when dispatching')
        self._media_field(target, media)

        self._apply(actor, order, target, media)
        if target == Order.STATUS_IN_TRANSIT:
            if expected is not None:
                order.expected_delivery_time = expected
            self._upsert_tracking(order, tracking or {}, expected)
            lines = tuple((i.sku, i.effective_qty) for i in order.items if not i.out_of_stock and i.effective_qty > 0)
            if lines:
                self._outbox.append(StockDeductionEvent(OrderRef.of(order), lines))
        self._announce(order, target)
        return order

    def _upsert_tracking(self, order: Order, details: Mapping[str, Any], expected: Optional[datetime]):
        tracking = order.tracking
        if tracking is None:
            tracking = Tracking(order_id=order.id)
            order.tracking = tracking
        tracking_id = details.get('trackingId')
        courier_link = details.get('courierLink', details.get('trackingLink'))
        if tracking_id:
            tracking.tracking_id = str(tracking_id).strip()
        if courier_link:
            tracking.courier_link = str(courier_link).strip()
        if expected is not None:
            tracking.estimated_delivery = expected

    @operation('Order status updated successfully')
    def update_status(self, actor: Actor, order_id: int, payload: Mapping[str, Any], media: Sequence[str] = ()):
        payload = as_payload(payload)
        target = validate_status(payload.get('newStatus'), GENERIC_TARGETS, 'newStatus')
        order = self._load(order_id)
        tracking = payload.get('trackingDetails')
        if tracking is not None and not isinstance(tracking, dict):
            raise OrderValidationError('trackingDetails must be an object')
        return self._advance(actor, order, target, media, tracking, payload.get('expectedDeliveryTime'))

    @operation('Arranging stage updated successfully')
    def update_arranging_stage(self, actor: Actor, order_id: int, stage: Any, media: Sequence[str] = ()):
        if stage not in Order.ARRANGING_STAGES:
            raise OrderValidationError('Invalid arranging stage')
        order = self._load(order_id)
        return self._advance(actor, order, stage, media)

    @operation('Order dispatched successfully')
    def dispatch(self, actor: Actor, order_id: int, payload: Mapping[str, Any], media: Sequence[str] = ()):
        payload = as_payload(payload)
        order = self._load(order_id)
        tracking = {'trackingId': str(payload.get('trackingId') or '').strip(), 'courierLink': payload.get('courierLink')}
        return self._advance(actor, order, Order.STATUS_IN_TRANSIT, media, tracking, payload.get('expectedDeliveryTime'),
                             require_tracking_id=True)

    @operation('Issue raised successfully')
    def raise_issue(self, actor: Actor, order_id: int, payload: Any):
        order = self._load(order_id, requester=actor)
        self.fsm.assert_role_allowed(Order.STATUS_WAITING_FOR_MANAGER_REPLY, actor.role)
        target = RAISE_TARGETS.get(order.status)
        if target is None:
            raise OrderStateError(f'Cannot raise an issue while order is {order.status}')
        self._authorize(actor, order, target)
        raised = issue_protocol.normalize_issue_payload(payload)
        self._items_by_id(order, (i.item_id for i in raised))

        self._apply(actor, order, target)
        now = self._now()
        for issue in raised:
            order.issues.append(OrderIssue(item_id=issue.item_id, message=issue.reason, sender_role=self._sender_role(actor),
                                           sender_id=actor.id, created_at=now))
        summary = issue_protocol.combined_remarks(raised)
        order.remarks = summary
        self._notify(order, 'ORDER_ISSUE_RAISED', 'Order Issue Raised',
                     f'Order {order.order_number} has {len(raised)} issue(s): {summary}', ISSUE_AUDIENCES)
        return order

    @operation('Reply sent successfully')
    def reply(self, actor: Actor, order_id: int, payload: Any):
        order = self._load(order_id)
        self.fsm.assert_role_allowed(Order.STATUS_MANAGER_REPLIED, actor.role)
        if order.status == Order.STATUS_RAISED_ISSUE:
            # post-dispatch thread: replies are appended, the status stays put
            target = Order.STATUS_RAISED_ISSUE
            self._assert_branch_scope(actor, order)
        else:
            target = Order.STATUS_MANAGER_REPLIED
            self._authorize(actor, order, target)
        replies = issue_protocol.normalize_replies(payload)
        items = self._items_by_id(order, (r.item_id for r in replies))

        if target == order.status:
            self._guard(order, target, target)
        else:
            self._apply(actor, order, target)
        now = self._now()
        for r in replies:
            order.issues.append(OrderIssue(item_id=r.item_id, message=r.message, sender_role=self._sender_role(actor),
                                           sender_id=actor.id, replied_by=actor.id, replied_at=now, created_at=now))
            if r.qty_approved is not None:
                self._set_approved_qty(items[r.item_id], r.qty_approved)
        self._recompute_value(order)
        if order.manager_id is None and actor.role == ROLE_MANAGER:
            order.manager_id = actor.id
        self._notify(order, 'ORDER_MANAGER_REPLY', f'{actor.role} Reply',
                     f'{actor.role} has replied to raised issues for order {order.order_number}',
                     (AUDIENCE_REQUESTER, AUDIENCE_BRANCH_MANAGERS, AUDIENCE_ADMINS))
        return order

    @operation('Manager reply confirmed successfully')
    def confirm_manager_reply(self, actor: Actor, order_id: int):
        order = self._load(order_id, requester=actor)
        target = Order.STATUS_APPROVED_ORDER
        self._authorize_from(actor, order, Order.STATUS_MANAGER_REPLIED, target)
        now = self._apply(actor, order, target)
        order.approved_at = now
        self._notify(order, 'ORDER_REPLY_CONFIRMED', 'Reply Accepted',
                     f'The branch accepted the reply on order {order.order_number}; it is approved for processing.',
                     ISSUE_AUDIENCES)
        return order

    @operation('Order receipt confirmed successfully')
    def confirm_received(self, actor: Actor, order_id: int, media: Sequence[str] = (), payload: Optional[Mapping[str, Any]] = None):
        order = self._load(order_id, requester=actor)
        target = Order.STATUS_CONFIRM_ORDER_RECEIVED
        self._authorize(actor, order, target)
        if not media:
            raise OrderValidationError('Please upload at least one photo or video to confirm receipt of items.')
        received_qty: Dict[int, int] = {}
        for entry in as_payload(payload).get('receivedItems') or []:
            if not isinstance(entry, dict):
                raise OrderValidationError('receivedItems must be a list of {itemId, qtyReceived}')
            item_id = positive_int(entry.get('itemId'), 'itemId')
            received_qty[item_id] = non_negative_int(entry.get('qtyReceived'), 'qtyReceived')
        items = self._items_by_id(order, received_qty)

        now = self._apply(actor, order, target, media)
        order.auto_close_at = self.calendar.add_working_hours(now, self._setting('AUTO_CLOSE_WORKING_HOURS'))
        for item_id, qty in received_qty.items():
            items[item_id].qty_received = qty
        if order.tracking is not None:
            order.tracking.delivered_at = now
        self._announce(order, target)
        return order

    @operation('Received issues reported successfully')
    def report_received_issues(self, actor: Actor, order_id: int, payload: Any, grouped_media: Optional[Mapping[int, Sequence[str]]] = None):
        order = self._load(order_id, requester=actor)
        self.fsm.assert_role_allowed(Order.STATUS_CONFIRM_ORDER_RECEIVED, actor.role)
        if order.status != Order.STATUS_CONFIRM_ORDER_RECEIVED:
            raise OrderStateError(f'Received issues can only be reported while the order is '
                                  f'{Order.STATUS_CONFIRM_ORDER_RECEIVED} (current: {order.status})')
        reported = issue_protocol.normalize_received_issues(payload)
        self._items_by_id(order, (r.item_id for r in reported))
        grouped_media = grouped_media or {}

        self._guard(order, order.status, order.status)
        now = self._now()
        for r in reported:
            order.received_issues.append(ReceivedIssue(item_id=r.item_id, reason=r.reason,
                                                       media=list(grouped_media.get(r.item_id, [])),
                                                       reported_by=actor.id, created_at=now))
        # a fresh report restarts the review window
        order.auto_close_at = self.calendar.add_working_hours(now, self._setting('AUTO_CLOSE_WORKING_HOURS'))
        logger.info('order %s: %d received issue(s) reported by %s', order.order_number, len(reported), actor.label)
        self._notify(order, 'ORDER_RECEIVED_ISSUE', 'Received Issues Reported',
                     f'Branch reported received issues for order {order.order_number}', ISSUE_AUDIENCES)
        return order

    @operation('Order closed successfully')
    def close(self, actor: Actor, order_id: int):
        order = self._load(order_id)
        target = Order.STATUS_CLOSED_ORDER
        self._authorize(actor, order, target)
        self._apply(actor, order, target)
        self._announce(order, target)
        return order

    @operation('Remarks updated successfully')
    def update_remarks(self, actor: Actor, order_id: int, remarks: Any):
        order = self._load(order_id)
        if actor.role not in MANAGER_ROLES:
            raise OrderAuthorizationError(f'Role {actor.role} cannot update remarks')
        if order.status == Order.STATUS_CLOSED_ORDER:
            raise OrderStateError('Remarks cannot be changed on a closed order')
        self._assert_branch_scope(actor, order)
        if remarks is not None and not isinstance(remarks, str):
            raise OrderValidationError('remarks must be a string')
        order.remarks = (remarks or '').strip() or None
        return order

    # ---------------- read side ---------------- #
    @operation('Order retrieved successfully')
    def get_order(self, actor: Actor, order_id: int):
        order = self._load(order_id)
        if not self._can_view(actor, order):
            raise OrderNotFoundError('Order not found')
        return order

    @operation('Order issues retrieved successfully')
    def get_order_issues(self, actor: Actor, order_id: int):
        order = self._load(order_id)
        if not self._can_view(actor, order):
            raise OrderNotFoundError('Order not found')
        return {
            'orderId': order.id,
            'orderNumber': order.order_number,
            'status': order.status,
            'state': issue_protocol.thread_state(order),
            'issues': [issue_json(i) for i in order.issues],
            'receivedIssues': [received_issue_json(i) for i in order.received_issues],
        }

    def can_view(self, actor: Actor, order: Order) -> bool:
        return self._can_view(actor, order)


def get_engine() -> OrderLifecycleEngine:
    """Engine bound to the current request session and the app's collaborators."""
    from flask import current_app
    from orderflow import get_db
    ext = current_app.extensions['orderflow']
    return OrderLifecycleEngine(get_db(), ext['ledger'], ext['dispatcher'], ext['calendar'], current_app.config)

__all__ = [
    'Actor', 'SYSTEM_ACTOR', 'OperationResult', 'OrderLifecycleEngine', 'ORDER_FSM', 'GENERIC_TARGETS',
    'operation', 'get_engine',
]
