"""branches, users, catalog mirror, orders and their child tables

Revision ID: 0001_order_lifecycle
Revises:
Create Date: 2026-10-17
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_order_lifecycle'
down_revision = None
branch_labels = None
depends_on = None

TS = sa.DateTime(timezone=True)


def upgrade():
    op.create_table('branches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('1')),
        sa.Column('updated_at', TS, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=False, unique=True),
        sa.Column('phone', sa.String(length=32)),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='BRANCH_USER'),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('1')),
        sa.Column('updated_at', TS, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_branch_id', 'users', ['branch_id'])

    op.create_table('manager_branches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('manager_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('1')),
        sa.UniqueConstraint('manager_id', 'branch_id', name='uq_manager_branch'),
    )

    op.create_table('catalog_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku', sa.String(length=64), nullable=False, unique=True),
        sa.Column('name', sa.String(length=150), nullable=False),
        sa.Column('category', sa.String(length=80)),
        sa.Column('unit', sa.String(length=32)),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('external_id', sa.String(length=64)),
        sa.Column('updated_at', TS, server_default=sa.func.now()),
    )
    op.create_index('ix_catalog_items_sku', 'catalog_items', ['sku'])
    op.create_index('ix_catalog_items_name', 'catalog_items', ['name'])
    op.create_index('ix_catalog_items_category', 'catalog_items', ['category'])
    op.create_index('ix_catalog_items_is_active', 'catalog_items', ['is_active'])

    op.create_table('orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=16), nullable=False, unique=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('remarks', sa.Text()),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_value_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False),
        sa.Column('requester_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('manager_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('arranging_stage', sa.String(length=32)),
        sa.Column('requested_at', TS, nullable=False),
        sa.Column('approved_at', TS),
        sa.Column('arranging_started_at', TS),
        sa.Column('arranging_completed_at', TS),
        sa.Column('sent_for_packaging_at', TS),
        sa.Column('packaging_started_at', TS),
        sa.Column('packaging_completed_at', TS),
        sa.Column('dispatched_at', TS),
        sa.Column('received_at', TS),
        sa.Column('closed_at', TS),
        sa.Column('auto_close_at', TS),
        sa.Column('expected_delivery_time', TS),
        sa.Column('arranging_media', sa.JSON()),
        sa.Column('packaging_media', sa.JSON()),
        sa.Column('transit_media', sa.JSON()),
        sa.Column('received_media', sa.JSON()),
        sa.Column('updated_at', TS, server_default=sa.func.now()),
    )
    for col in ('order_number', 'status', 'branch_id', 'requester_id', 'manager_id', 'auto_close_at'):
        op.create_index(f'ix_orders_{col}', 'orders', [col])

    op.create_table('order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('qty_requested', sa.Integer(), nullable=False),
        sa.Column('qty_approved', sa.Integer()),
        sa.Column('qty_received', sa.Integer()),
        sa.Column('unit_price_cents', sa.Integer()),
        sa.Column('total_price_cents', sa.Integer()),
        sa.Column('out_of_stock', sa.Boolean(), nullable=False, server_default=sa.text('0')),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_sku', 'order_items', ['sku'])

    op.create_table('trackings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('tracking_id', sa.String(length=128)),
        sa.Column('courier_link', sa.String(length=512)),
        sa.Column('estimated_delivery', TS),
        sa.Column('delivered_at', TS),
        sa.Column('updated_at', TS, server_default=sa.func.now()),
    )

    op.create_table('order_issues',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('order_items.id', ondelete='SET NULL'), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('sender_role', sa.String(length=32), nullable=False),
        sa.Column('sender_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('replied_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('replied_at', TS),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('ix_order_issues_order_id', 'order_issues', ['order_id'])

    op.create_table('received_issues',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('order_items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('media', sa.JSON()),
        sa.Column('reported_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('ix_received_issues_order_id', 'received_issues', ['order_id'])

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=True),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', TS, server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_order_id', 'notifications', ['order_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('actor_role', sa.String(length=32)),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64)),
        sa.Column('entity_id', sa.String(length=64)),
        sa.Column('meta', sa.JSON()),
        sa.Column('created_at', TS, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity', 'entity_id'])


def downgrade():
    for table in ('audit_logs', 'notifications', 'received_issues', 'order_issues', 'trackings',
                  'order_items', 'orders', 'catalog_items', 'manager_branches', 'users', 'branches'):
        op.drop_table(table)
