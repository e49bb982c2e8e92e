from __future__ import annotations
import json
from flask import Blueprint, request, abort
from sqlalchemy import func

from orderflow import get_db
from orderflow.decorators.auth import require_roles
from orderflow.decorators.audit import audit_log
from orderflow.models.authz import ROLE_ADMIN
from orderflow.models.order import Order
from orderflow.services.issues import group_media_by_item
from orderflow.services.lifecycle import ORDER_FSM, get_engine
from orderflow.services.media import save_request_media, save_grouped_media, discard_uploads
from orderflow.services.policy import PENDING_STATUSES, current_actor, filter_visible_orders, filter_query_by_branches
from orderflow.services.serializers import order_summary_json
from orderflow.utils.filters import apply_filters, split_csv
from orderflow.utils.listing import apply_pagination, make_cached_list_response, handle_conditional
from orderflow.utils.sorting import apply_multi_sort

orders_bp = Blueprint('orders', __name__)

# multipart fields carrying JSON documents
JSON_FORM_FIELDS = ('trackingDetails', 'issues', 'replies', 'items', 'inStockItems', 'outOfStockItems', 'receivedItems')

ORDER_SORT_FIELDS = {
    'requestedAt': Order.requested_at,
    'updatedAt': Order.updated_at,
    'status': Order.status,
    'orderNumber': Order.order_number,
    'totalValueCents': Order.total_value_cents,
    'id': Order.id,
}


def _payload() -> dict:
    """JSON body, or multipart form fields with the JSON-valued ones decoded."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            abort(400, description='Malformed JSON body')
        if not isinstance(data, dict):
            abort(400, description='Request body must be a JSON object')
        return data
    data = {}
    for key in request.form:
        value = request.form.get(key)
        if key in JSON_FORM_FIELDS:
            try:
                value = json.loads(value)
            except ValueError:
                abort(400, description=f'{key} must be valid JSON')
        data[key] = value
    return data


def _respond(result, created: bool = False):
    status = result.http_status
    if result.success and created:
        status = 201
    return result.to_dict(), status


def _status_snapshot(order_id):
    status = get_db().query(Order.status).filter(Order.id == order_id).scalar()
    return {'status': status} if status else None


def _with_media(run, media):
    """Call the engine; files saved for a rejected call are removed again."""
    try:
        result = run(media)
    except Exception:
        discard_uploads(media)
        raise
    if not result.success and media:
        discard_uploads(media)
    return _respond(result)


def _transition_audit(action: str):
    return audit_log(action, entity='Order', entity_id_arg='order_id', diff_keys=['status'],
                     pre_fetch=lambda a, kw: _status_snapshot(kw.get('order_id')))


@orders_bp.post('')
@require_roles()
@audit_log('ORDER.CREATE', entity='Order', meta_keys=['orderNumber', 'totalItems', 'totalValueCents'])
def create_order():
    return _respond(get_engine().create(current_actor(), _payload()), created=True)


@orders_bp.put('/<int:order_id>/approve')
@require_roles()
@_transition_audit('ORDER.APPROVE')
def approve_order(order_id: int):
    return _respond(get_engine().approve(current_actor(), order_id, _payload()))


@orders_bp.put('/<int:order_id>/confirm')
@require_roles()
@_transition_audit('ORDER.CONFIRM')
def confirm_order(order_id: int):
    return _respond(get_engine().confirm(current_actor(), order_id))


@orders_bp.put('/<int:order_id>/update-status')
@require_roles()
@_transition_audit('ORDER.STATUS.UPDATE')
def update_order_status(order_id: int):
    data = _payload()
    media = save_request_media(request.files)
    return _with_media(lambda m: get_engine().update_status(current_actor(), order_id, data, m), media)


@orders_bp.put('/<int:order_id>/arranging-stage')
@require_roles()
@_transition_audit('ORDER.ARRANGING.UPDATE')
def update_arranging_stage(order_id: int):
    stage = _payload().get('arrangingStage')
    media = save_request_media(request.files)
    return _with_media(lambda m: get_engine().update_arranging_stage(current_actor(), order_id, stage, m), media)


@orders_bp.put('/<int:order_id>/dispatch')
@require_roles()
@_transition_audit('ORDER.DISPATCH')
def dispatch_order(order_id: int):
    data = _payload()
    media = save_request_media(request.files)
    return _with_media(lambda m: get_engine().dispatch(current_actor(), order_id, data, m), media)


@orders_bp.put('/<int:order_id>/raise-issue')
@require_roles()
@_transition_audit('ORDER.ISSUE.RAISE')
def raise_issue(order_id: int):
    return _respond(get_engine().raise_issue(current_actor(), order_id, _payload()))


@orders_bp.put('/<int:order_id>/reply')
@require_roles()
@_transition_audit('ORDER.ISSUE.REPLY')
def reply_to_issue(order_id: int):
    return _respond(get_engine().reply(current_actor(), order_id, _payload()))


@orders_bp.put('/<int:order_id>/confirm-manager-reply')
@require_roles()
@_transition_audit('ORDER.ISSUE.CONFIRM_REPLY')
def confirm_manager_reply(order_id: int):
    return _respond(get_engine().confirm_manager_reply(current_actor(), order_id))


@orders_bp.put('/<int:order_id>/confirm-received')
@require_roles()
@_transition_audit('ORDER.RECEIVE')
def confirm_received(order_id: int):
    data = _payload()
    media = save_request_media(request.files)
    return _with_media(lambda m: get_engine().confirm_received(current_actor(), order_id, m, data), media)


@orders_bp.put('/<int:order_id>/report-received-issues')
@require_roles()
@_transition_audit('ORDER.RECEIVED_ISSUES.REPORT')
def report_received_issues(order_id: int):
    issues = _payload().get('issues')
    if issues is None:
        abort(400, description='Missing issues payload')
    saved = save_grouped_media(request.files)
    grouped = group_media_by_item(saved)
    paths = [p for group in saved.values() for p in group]
    try:
        result = get_engine().report_received_issues(current_actor(), order_id, issues, grouped)
    except Exception:
        discard_uploads(paths)
        raise
    if not result.success:
        discard_uploads(paths)
    return _respond(result)


@orders_bp.put('/<int:order_id>/close')
@require_roles()
@_transition_audit('ORDER.CLOSE')
def close_order(order_id: int):
    return _respond(get_engine().close(current_actor(), order_id))


@orders_bp.put('/<int:order_id>/remarks')
@require_roles()
@audit_log('ORDER.REMARKS.UPDATE', entity='Order', entity_id_arg='order_id', meta_keys=['orderNumber', 'remarks'])
def update_remarks(order_id: int):
    return _respond(get_engine().update_remarks(current_actor(), order_id, _payload().get('remarks')))


# ---------------- read side ---------------- #
def _order_list_response(q):
    filter_specs = {
        'status': {
            'coerce': split_csv,
            'validate': lambda v: bool(v) and all(s in Order.ALL_STATUSES for s in v),
            'op': lambda qu, v: qu.filter(Order.status.in_(v)),
        },
        'branch_id': {'coerce': int, 'op': lambda qu, v: qu.filter(Order.branch_id == v)},
    }
    q = apply_filters(q, filter_specs, request.args)
    q = apply_multi_sort(q, request.args.get('sort'), ORDER_SORT_FIELDS, Order.id, default='-requestedAt')
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    rows_json = [order_summary_json(o) for o in rows]
    latest_ts = max((o.updated_at for o in rows if o.updated_at), default=None)
    if latest_ts is None and total:
        latest_ts = q.with_entities(func.max(Order.updated_at)).order_by(None).scalar()
    resp, etag = make_cached_list_response(rows_json, total, limit, offset, latest_ts)
    return handle_conditional(etag, latest_ts) or resp


@orders_bp.get('/my')
@require_roles()
def list_my_orders():
    actor = current_actor()
    return _order_list_response(get_db().query(Order).filter(Order.requester_id == actor.id))


@orders_bp.get('/branch')
@require_roles()
def list_branch_orders():
    actor = current_actor()
    raw = request.args.get('branchId')
    if raw:
        try:
            branch_ids = [int(raw)]
        except ValueError:
            abort(400, description='branchId invalid')
        if actor.role != ROLE_ADMIN and branch_ids[0] not in actor.branch_ids:
            abort(403, description='Branch access denied')
    elif actor.role == ROLE_ADMIN:
        branch_ids = []
    else:
        branch_ids = list(actor.branch_ids)
        if not branch_ids:
            abort(403, description='No branch assigned')
    return _order_list_response(filter_query_by_branches(get_db().query(Order), Order.branch_id, branch_ids))


@orders_bp.get('/pending')
@require_roles()
def list_pending_orders():
    actor = current_actor()
    statuses = PENDING_STATUSES.get(actor.role)
    if not statuses:
        abort(403, description='No work queue for this role')
    q = filter_visible_orders(get_db().query(Order), actor).filter(Order.status.in_(statuses))
    return _order_list_response(q)


@orders_bp.get('/lifecycle')
def lifecycle():
    return {'statuses': list(Order.ALL_STATUSES), 'transitions': ORDER_FSM.describe()}


@orders_bp.get('/<int:order_id>')
@require_roles()
def get_order(order_id: int):
    return _respond(get_engine().get_order(current_actor(), order_id))


@orders_bp.get('/<int:order_id>/issues')
@require_roles()
def get_order_issues(order_id: int):
    return _respond(get_engine().get_order_issues(current_actor(), order_id))
