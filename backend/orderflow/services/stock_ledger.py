from __future__ import annotations
"""Stock ledger adapter over the catalog mirror table.

The catalog is refreshed by an external sync job, so every call re-reads the
row it needs; nothing here caches stock levels between calls.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy import select, update, case
from sqlalchemy.orm import Session

from orderflow.models.catalog_item import CatalogItem

logger = logging.getLogger(__name__)

RESERVE_OK = 'ok'
RESERVE_INSUFFICIENT = 'insufficient'


@dataclass(frozen=True)
class CatalogEntry:
    sku: str
    name: str
    stock: int
    price_cents: int
    active: bool
    external_id: Optional[str] = None


def _entry(row: CatalogItem) -> CatalogEntry:
    return CatalogEntry(
        sku=row.sku,
        name=row.name,
        stock=row.current_stock,
        price_cents=row.price_cents,
        active=row.is_active,
        external_id=row.external_id,
    )


class SqlStockLedger:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def find_by_sku(self, sku: str) -> Optional[CatalogEntry]:
        session = self._session_factory()
        row = session.execute(
            select(CatalogItem).where(CatalogItem.sku == sku).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _entry(row) if row else None

    def find_active(self, skus: Iterable[str]) -> Dict[str, CatalogEntry]:
        """Return active catalog entries keyed by SKU (unknown or inactive SKUs are absent)."""
        wanted = sorted(set(skus))
        if not wanted:
            return {}
        session = self._session_factory()
        rows = session.execute(
            select(CatalogItem)
            .where(CatalogItem.sku.in_(wanted), CatalogItem.is_active.is_(True))
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {r.sku: _entry(r) for r in rows}

    def reserve_stock(self, sku: str, qty: int) -> str:
        """Availability check used at order creation: 'ok' when qty <= current stock."""
        entry = self.find_by_sku(sku)
        if entry is None or not entry.active or entry.stock < qty:
            return RESERVE_INSUFFICIENT
        return RESERVE_OK

    def deduct(self, sku: str, qty: int) -> bool:
        """Subtract qty from the catalog stock (floored at zero) in its own transaction.

        Returns False when the SKU is unknown or the stock did not cover qty.
        """
        session = self._session_factory()
        try:
            current = session.execute(
                select(CatalogItem.current_stock).where(CatalogItem.sku == sku)
            ).scalar_one_or_none()
            if current is None:
                logger.warning('stock deduction skipped, unknown sku %s', sku)
                return False
            session.execute(
                update(CatalogItem)
                .where(CatalogItem.sku == sku)
                .values(current_stock=case((CatalogItem.current_stock >= qty, CatalogItem.current_stock - qty), else_=0))
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        if current < qty:
            logger.warning('stock for %s ran short on deduction: had %s, shipped %s', sku, current, qty)
            return False
        return True

__all__ = ['CatalogEntry', 'SqlStockLedger', 'RESERVE_OK', 'RESERVE_INSUFFICIENT']
