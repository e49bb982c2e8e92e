from __future__ import annotations
from datetime import datetime
from typing import Optional

from orderflow.models.order import Order, OrderItem, Tracking, OrderIssue, ReceivedIssue
from orderflow.utils.working_hours import as_utc


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat().replace('+00:00', 'Z')


def item_json(item: OrderItem) -> dict:
    return {
        'id': item.id,
        'sku': item.sku,
        'qtyRequested': item.qty_requested,
        'qtyApproved': item.qty_approved,
        'qtyReceived': item.qty_received,
        'unitPriceCents': item.unit_price_cents,
        'totalPriceCents': item.total_price_cents,
        'outOfStock': bool(item.out_of_stock),
    }


def tracking_json(tracking: Optional[Tracking]) -> Optional[dict]:
    if tracking is None:
        return None
    return {
        'trackingId': tracking.tracking_id,
        'courierLink': tracking.courier_link,
        'estimatedDelivery': iso(tracking.estimated_delivery),
        'deliveredAt': iso(tracking.delivered_at),
    }


def issue_json(issue: OrderIssue) -> dict:
    return {
        'id': issue.id,
        'itemId': issue.item_id,
        'message': issue.message,
        'senderRole': issue.sender_role,
        'senderId': issue.sender_id,
        'repliedBy': issue.replied_by,
        'repliedAt': iso(issue.replied_at),
        'createdAt': iso(issue.created_at),
    }


def received_issue_json(issue: ReceivedIssue) -> dict:
    return {
        'id': issue.id,
        'itemId': issue.item_id,
        'reason': issue.reason,
        'media': list(issue.media or []),
        'reportedBy': issue.reported_by,
        'createdAt': iso(issue.created_at),
    }


def order_summary_json(order: Order) -> dict:
    """List-row shape: no child collections except the item count."""
    return {
        'id': order.id,
        'orderNumber': order.order_number,
        'status': order.status,
        'branchId': order.branch_id,
        'requesterId': order.requester_id,
        'managerId': order.manager_id,
        'totalItems': order.total_items,
        'totalValueCents': order.total_value_cents,
        'itemCount': len(order.items),
        'requestedAt': iso(order.requested_at),
        'autoCloseAt': iso(order.auto_close_at),
        'updatedAt': iso(order.updated_at),
    }


def order_json(order: Order) -> dict:
    return {
        'id': order.id,
        'orderNumber': order.order_number,
        'status': order.status,
        'arrangingStage': order.arranging_stage,
        'remarks': order.remarks,
        'branchId': order.branch_id,
        'requesterId': order.requester_id,
        'managerId': order.manager_id,
        'totalItems': order.total_items,
        'totalValueCents': order.total_value_cents,
        'requestedAt': iso(order.requested_at),
        'approvedAt': iso(order.approved_at),
        'arrangingStartedAt': iso(order.arranging_started_at),
        'arrangingCompletedAt': iso(order.arranging_completed_at),
        'sentForPackagingAt': iso(order.sent_for_packaging_at),
        'packagingStartedAt': iso(order.packaging_started_at),
        'packagingCompletedAt': iso(order.packaging_completed_at),
        'dispatchedAt': iso(order.dispatched_at),
        'receivedAt': iso(order.received_at),
        'closedAt': iso(order.closed_at),
        'autoCloseAt': iso(order.auto_close_at),
        'expectedDeliveryTime': iso(order.expected_delivery_time),
        'arrangingMedia': list(order.arranging_media or []),
        'packagingMedia': list(order.packaging_media or []),
        'transitMedia': list(order.transit_media or []),
        'receivedMedia': list(order.received_media or []),
        'items': [item_json(i) for i in order.items],
        'tracking': tracking_json(order.tracking),
        'issues': [issue_json(i) for i in order.issues],
        'receivedIssues': [received_issue_json(i) for i in order.received_issues],
        'updatedAt': iso(order.updated_at),
    }

__all__ = ['iso', 'item_json', 'tracking_json', 'issue_json', 'received_issue_json', 'order_summary_json', 'order_json']
