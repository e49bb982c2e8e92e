from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Boolean, DateTime, func
from typing import Optional
from .authz import Base


class CatalogItem(Base):
    """Local mirror of the external catalog. Mutated by the sync job and by dispatch deductions."""
    __tablename__ = 'catalog_items'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False, index=True)
    category: Mapped[Optional[str]] = mapped_column(String(80), nullable=True, index=True)
    unit: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    # identifier of the item in the upstream inventory system
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

__all__ = ["CatalogItem"]
