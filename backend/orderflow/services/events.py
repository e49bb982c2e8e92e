from __future__ import annotations
"""Post-commit side effects of order transitions.

Transitions only *describe* what should happen next (notify these audiences,
deduct this stock) by queueing events. The dispatcher runs them once the
transaction has committed; each event is isolated so one failure never stops
the rest and nothing is re-raised to the caller.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from orderflow.services.notifications import NotificationSink, RecipientResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderRef:
    id: int
    order_number: str
    branch_id: int
    requester_id: int
    manager_id: Optional[int] = None

    @classmethod
    def of(cls, order) -> 'OrderRef':
        return cls(order.id, order.order_number, order.branch_id, order.requester_id, order.manager_id)


@dataclass(frozen=True)
class NotifyEvent:
    order: OrderRef
    event_type: str
    title: str
    body: str
    audiences: Tuple[str, ...]


@dataclass(frozen=True)
class StockDeductionEvent:
    order: OrderRef
    # (sku, qty) pairs for lines that were not flagged out of stock
    lines: Tuple[Tuple[str, int], ...]


class EventDispatcher:
    def __init__(self, sink: NotificationSink, resolver: RecipientResolver, ledger,
                 executor: Optional[ThreadPoolExecutor] = None,
                 on_thread_exit: Optional[Callable[[], None]] = None):
        self.sink = sink
        self.resolver = resolver
        self.ledger = ledger
        self.executor = executor
        self._on_thread_exit = on_thread_exit

    def dispatch(self, events: Iterable[object]):
        batch = list(events)
        if not batch:
            return
        if self.executor is None:
            self._run(batch)
        else:
            self.executor.submit(self._run_in_worker, batch)

    def _run_in_worker(self, batch):
        try:
            self._run(batch)
        finally:
            if self._on_thread_exit:
                self._on_thread_exit()

    def _run(self, batch):
        for event in batch:
            try:
                if isinstance(event, NotifyEvent):
                    self._notify(event)
                elif isinstance(event, StockDeductionEvent):
                    self._deduct(event)
                else:
                    logger.error('dropping unknown event %r', event)
            except Exception:
                logger.exception('post-commit event %s for order %s failed', type(event).__name__, getattr(event, 'order', None))

    def _notify(self, event: NotifyEvent):
        ref = event.order
        user_ids = self.resolver.resolve(event.audiences, ref.branch_id, ref.requester_id, ref.manager_id)
        self.sink.notify_users(user_ids, ref.id, event.event_type, event.title, event.body)

    def _deduct(self, event: StockDeductionEvent):
        failed = []
        for sku, qty in event.lines:
            try:
                ok = self.ledger.deduct(sku, qty)
            except Exception:
                logger.exception('stock deduction for %s x%s on order %s failed', sku, qty, event.order.order_number)
                ok = False
            if not ok:
                failed.append(sku)
        if failed:
            logger.warning('order %s dispatched but stock sync failed for %s', event.order.order_number, ', '.join(failed))
        else:
            logger.info('stock deducted for order %s (%d line(s))', event.order.order_number, len(event.lines))

__all__ = ['OrderRef', 'NotifyEvent', 'StockDeductionEvent', 'EventDispatcher']
