from __future__ import annotations
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, ForeignKey, DateTime, JSON, Text, func
from typing import Optional, List
from datetime import datetime

from .authz import Base


class Order(Base):
    __tablename__ = 'orders'
    # Lifecycle status constants
    STATUS_UNDER_REVIEW = 'UNDER_REVIEW'
    STATUS_CONFIRM_PENDING = 'CONFIRM_PENDING'
    STATUS_WAITING_FOR_MANAGER_REPLY = 'WAITING_FOR_MANAGER_REPLY'
    STATUS_MANAGER_REPLIED = 'MANAGER_REPLIED'
    STATUS_APPROVED_ORDER = 'APPROVED_ORDER'
    STATUS_ARRANGING = 'ARRANGING'
    STATUS_ARRANGED = 'ARRANGED'
    STATUS_SENT_FOR_PACKAGING = 'SENT_FOR_PACKAGING'
    STATUS_UNDER_PACKAGING = 'UNDER_PACKAGING'
    STATUS_PACKAGING_COMPLETED = 'PACKAGING_COMPLETED'
    STATUS_IN_TRANSIT = 'IN_TRANSIT'
    STATUS_RAISED_ISSUE = 'RAISED_ISSUE'
    STATUS_CONFIRM_ORDER_RECEIVED = 'CONFIRM_ORDER_RECEIVED'
    STATUS_CLOSED_ORDER = 'CLOSED_ORDER'
    # Ordered by lifecycle position
    ALL_STATUSES = (
        STATUS_UNDER_REVIEW,
        STATUS_CONFIRM_PENDING,
        STATUS_WAITING_FOR_MANAGER_REPLY,
        STATUS_MANAGER_REPLIED,
        STATUS_APPROVED_ORDER,
        STATUS_ARRANGING,
        STATUS_ARRANGED,
        STATUS_SENT_FOR_PACKAGING,
        STATUS_UNDER_PACKAGING,
        STATUS_PACKAGING_COMPLETED,
        STATUS_IN_TRANSIT,
        STATUS_RAISED_ISSUE,
        STATUS_CONFIRM_ORDER_RECEIVED,
        STATUS_CLOSED_ORDER,
    )
    ARRANGING_STAGES = (STATUS_ARRANGING, STATUS_ARRANGED, STATUS_SENT_FOR_PACKAGING)
    PACKAGING_STAGES = (STATUS_UNDER_PACKAGING, STATUS_PACKAGING_COMPLETED)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(16), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_UNDER_REVIEW, index=True)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_value_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    branch_id: Mapped[int] = mapped_column(ForeignKey('branches.id'), nullable=False, index=True)
    requester_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, index=True)
    manager_id: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id'), nullable=True, index=True)
    arranging_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    arranging_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    arranging_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_for_packaging_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    packaging_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    packaging_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    auto_close_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    expected_delivery_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    arranging_media: Mapped[List[str]] = mapped_column(JSON, default=list)
    packaging_media: Mapped[List[str]] = mapped_column(JSON, default=list)
    transit_media: Mapped[List[str]] = mapped_column(JSON, default=list)
    received_media: Mapped[List[str]] = mapped_column(JSON, default=list)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan', order_by='OrderItem.id')
    tracking = relationship('Tracking', back_populates='order', uselist=False, cascade='all, delete-orphan')
    issues = relationship('OrderIssue', back_populates='order', cascade='all, delete-orphan', order_by='OrderIssue.id')
    received_issues = relationship('ReceivedIssue', back_populates='order', cascade='all, delete-orphan', order_by='ReceivedIssue.id')


class OrderItem(Base):
    __tablename__ = 'order_items'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    # catalog reference by SKU, not a foreign key
    sku: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    qty_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    qty_approved: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    qty_received: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    unit_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_price_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    out_of_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order = relationship('Order', back_populates='items')

    @property
    def effective_qty(self) -> int:
        return self.qty_approved if self.qty_approved is not None else self.qty_requested


class Tracking(Base):
    __tablename__ = 'trackings'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    courier_link: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    order = relationship('Order', back_populates='tracking')


class OrderIssue(Base):
    """One message of the raise/reply conversation. Rows are never updated."""
    __tablename__ = 'order_issues'
    SENDER_BRANCH_USER = 'BRANCH_USER'
    SENDER_MANAGER = 'MANAGER'
    SENDER_ADMIN = 'ADMIN'
    ALL_SENDERS = (SENDER_BRANCH_USER, SENDER_MANAGER, SENDER_ADMIN)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    item_id: Mapped[Optional[int]] = mapped_column(ForeignKey('order_items.id', ondelete='SET NULL'), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sender_role: Mapped[str] = mapped_column(String(32), nullable=False)
    sender_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    replied_by: Mapped[Optional[int]] = mapped_column(ForeignKey('users.id'), nullable=True)
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    order = relationship('Order', back_populates='issues')


class ReceivedIssue(Base):
    """Post-delivery defect report for one item."""
    __tablename__ = 'received_issues'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    item_id: Mapped[int] = mapped_column(ForeignKey('order_items.id', ondelete='CASCADE'), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    media: Mapped[List[str]] = mapped_column(JSON, default=list)
    reported_by: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    order = relationship('Order', back_populates='received_issues')
