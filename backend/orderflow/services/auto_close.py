from __future__ import annotations
"""Auto-close sweep for received orders.

Each due order is closed through the engine's normal close operation in its
own transaction, as the SYSTEM actor. An order already closed by someone else
fails the status precondition and is counted as skipped, so running the sweep
twice is harmless.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import select

from orderflow.models.order import Order
from orderflow.services.lifecycle import SYSTEM_ACTOR, OrderLifecycleEngine
from orderflow.utils.working_hours import as_utc

logger = logging.getLogger(__name__)

JOB_ID = 'auto_close_orders'


@dataclass
class SweepReport:
    candidates: int = 0
    closed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'candidates': self.candidates,
            'closed': list(self.closed),
            'skipped': list(self.skipped),
            'failed': list(self.failed),
        }


def find_due_orders(session, now: datetime) -> List[int]:
    rows = session.execute(
        select(Order.id)
        .where(
            Order.status == Order.STATUS_CONFIRM_ORDER_RECEIVED,
            Order.auto_close_at.is_not(None),
            Order.auto_close_at <= now,
        )
        .order_by(Order.auto_close_at, Order.id)
    ).scalars().all()
    return list(rows)


def run_auto_close_sweep(engine: OrderLifecycleEngine, now: Optional[datetime] = None) -> SweepReport:
    now = as_utc(now or engine.clock())
    report = SweepReport()
    due = find_due_orders(engine.session, now)
    report.candidates = len(due)
    logger.info('auto-close sweep: %d order(s) due', len(due))
    for order_id in due:
        try:
            result = engine.close(SYSTEM_ACTOR, order_id)
        except Exception:
            logger.exception('auto-close of order %s failed', order_id)
            report.failed.append(order_id)
            continue
        if result.success:
            logger.info('auto-closed order %s', result.data['orderNumber'])
            report.closed.append(order_id)
        elif result.error in ('state', 'not_found'):
            # closed manually between the query and the close
            report.skipped.append(order_id)
        else:
            logger.error('auto-close of order %s rejected: %s', order_id, result.message)
            report.failed.append(order_id)
    return report


def _scheduled_sweep(app):
    from orderflow import remove_session
    from orderflow.services.lifecycle import get_engine
    with app.app_context():
        try:
            run_auto_close_sweep(get_engine())
        except Exception:
            logger.exception('auto-close sweep aborted')
        finally:
            remove_session()


def start_scheduler(app) -> BackgroundScheduler:
    """Start a background scheduler running the sweep every AUTO_CLOSE_INTERVAL_MINUTES."""
    scheduler = BackgroundScheduler(
        job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 60,
        },
        timezone='UTC',
    )
    scheduler.add_job(
        _scheduled_sweep,
        'interval',
        minutes=app.config['AUTO_CLOSE_INTERVAL_MINUTES'],
        args=[app],
        id=JOB_ID,
        name='Auto-close received orders',
        replace_existing=True,
    )
    scheduler.start()
    logger.info('auto-close scheduler started (every %s min)', app.config['AUTO_CLOSE_INTERVAL_MINUTES'])
    return scheduler

__all__ = ['SweepReport', 'find_due_orders', 'run_auto_close_sweep', 'start_scheduler']
