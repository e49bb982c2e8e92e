from __future__ import annotations
"""Issue/reply conversation helpers.

Payload normalizers turn transport shapes into clean tuples before anything is
written, so an empty reason rejects the whole call. ``thread_state`` derives
the conversation state from the append-only rows plus the order status.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from orderflow.errors import OrderValidationError
from orderflow.models.order import Order, OrderIssue
from orderflow.utils.validation import non_negative_int, positive_int

THREAD_NONE = 'NONE'
THREAD_OPEN = 'OPEN'
THREAD_REPLIED = 'REPLIED'
THREAD_RESOLVED = 'RESOLVED'

MANAGER_SENDERS = (OrderIssue.SENDER_MANAGER, OrderIssue.SENDER_ADMIN)


@dataclass(frozen=True)
class RaisedIssue:
    item_id: Optional[int]
    reason: str


@dataclass(frozen=True)
class Reply:
    item_id: Optional[int]
    message: str
    qty_approved: Optional[int] = None


@dataclass(frozen=True)
class ReceivedIssueInput:
    item_id: int
    reason: str


def _optional_item_id(raw: Any) -> Optional[int]:
    if raw is None or raw == '':
        return None
    return positive_int(raw, 'itemId')


def normalize_issue_payload(payload: Any) -> List[RaisedIssue]:
    """Accept a plain reason string, ``{"reason": ...}``, ``{"issues": [...]}`` or a list of ``{itemId, reason}``."""
    if isinstance(payload, dict):
        if 'issues' in payload:
            payload = payload['issues']
        else:
            payload = payload.get('reason')
    if isinstance(payload, str):
        reason = payload.strip()
        if not reason:
            raise OrderValidationError('Issue reason cannot be empty')
        return [RaisedIssue(None, reason)]
    if not isinstance(payload, list):
        raise OrderValidationError('Issue reason cannot be empty')
    issues = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise OrderValidationError('Each issue must be an object with itemId and reason')
        reason = str(entry.get('reason') or '').strip()
        if not reason:
            continue
        issues.append(RaisedIssue(_optional_item_id(entry.get('itemId')), reason))
    if not issues:
        raise OrderValidationError('No valid issues provided')
    return issues


def combined_remarks(issues: List[RaisedIssue]) -> str:
    if len(issues) == 1:
        return issues[0].reason
    return ' | '.join(f'#{idx}: {issue.reason}' for idx, issue in enumerate(issues, start=1))


def normalize_replies(payload: Any) -> List[Reply]:
    """``{"replies": [{itemId?, reply, qtyApproved?}]}`` or a bare list of the same."""
    if isinstance(payload, dict):
        payload = payload.get('replies')
    if not isinstance(payload, list) or not payload:
        raise OrderValidationError('At least one reply is required')
    replies = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise OrderValidationError('Each reply must be an object')
        message = str(entry.get('reply') or entry.get('message') or '').strip()
        qty = entry.get('qtyApproved')
        item_id = _optional_item_id(entry.get('itemId'))
        if qty is not None:
            if item_id is None:
                raise OrderValidationError('qtyApproved requires itemId')
            qty = non_negative_int(qty, 'qtyApproved')
        if not message and qty is None:
            raise OrderValidationError('Reply message cannot be empty')
        replies.append(Reply(item_id, message or f'Approved quantity updated to {qty}', qty))
    return replies


def normalize_received_issues(payload: Any) -> List[ReceivedIssueInput]:
    if not isinstance(payload, list) or not payload:
        raise OrderValidationError('Issues array required')
    out = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise OrderValidationError('Each issue must be an object with itemId and reason')
        reason = str(entry.get('reason') or '').strip()
        if entry.get('itemId') in (None, '') or not reason:
            continue
        out.append(ReceivedIssueInput(positive_int(entry.get('itemId'), 'itemId'), reason))
    if not out:
        raise OrderValidationError('No valid issues provided')
    return out


def group_media_by_item(files: Dict[str, Iterable[str]]) -> Dict[int, List[str]]:
    """Map form field names like ``media_12`` / ``media-12`` to item ids."""
    grouped: Dict[int, List[str]] = {}
    for field_name, paths in files.items():
        if not field_name.startswith(('media_', 'media-')):
            continue
        suffix = field_name[len('media_'):]
        if not suffix.isdigit():
            continue
        grouped.setdefault(int(suffix), []).extend(paths)
    return grouped


def thread_state(order: Order) -> str:
    """NONE before any issue, OPEN while awaiting a reply, REPLIED after one, RESOLVED once accepted."""
    if not order.issues:
        return THREAD_NONE
    if order.status in (Order.STATUS_WAITING_FOR_MANAGER_REPLY, Order.STATUS_RAISED_ISSUE):
        last = order.issues[-1]
        if order.status == Order.STATUS_RAISED_ISSUE and last.sender_role in MANAGER_SENDERS:
            return THREAD_REPLIED
        return THREAD_OPEN
    if order.status == Order.STATUS_MANAGER_REPLIED:
        return THREAD_REPLIED
    return THREAD_RESOLVED

__all__ = [
    'RaisedIssue', 'Reply', 'ReceivedIssueInput', 'normalize_issue_payload', 'combined_remarks',
    'normalize_replies', 'normalize_received_issues', 'group_media_by_item', 'thread_state',
    'THREAD_NONE', 'THREAD_OPEN', 'THREAD_REPLIED', 'THREAD_RESOLVED',
]
