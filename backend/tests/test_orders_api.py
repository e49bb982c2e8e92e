import io
import os

import pytest
from flask import Flask

from orderflow import get_db
from orderflow.models.audit import AuditLog
from orderflow.models.order import Order
from orderflow.services.lifecycle import OrderLifecycleEngine
from tests.test_lifecycle_helpers import headers_for, jwt_headers, reload_order
from tests.test_utils_seed import seed_branch_world


@pytest.fixture()
def world(app_context: Flask):
    return seed_branch_world({'A': 1000, 'B': 250})


def _create(client, world, qty=2):
    resp = client.post('/orders', json={
        'branchId': world.branch.id,
        'inStockItems': [{'sku': world.skus['A'].sku, 'quantity': qty}],
    }, headers=headers_for(world.branch_user))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['data']


def _audit_rows(action, order_id):
    session = get_db()
    session.expire_all()
    return session.query(AuditLog).filter_by(action=action, entity_id=str(order_id)).all()


def test_create_returns_201_and_audits(client, world):
    body = _create(client, world)
    assert body['status'] == Order.STATUS_UNDER_REVIEW
    assert body['totalValueCents'] == 2000
    rows = _audit_rows('ORDER.CREATE', body['id'])
    assert len(rows) == 1
    assert rows[0].actor_role == 'BRANCH_USER'
    assert rows[0].meta['orderNumber'] == body['orderNumber']


def test_create_requires_token(client, world):
    resp = client.post('/orders', json={'branchId': world.branch.id})
    assert resp.status_code == 401


def test_create_validation_is_400(client, world):
    resp = client.post('/orders', json={'branchId': world.branch.id, 'inStockItems': []},
                       headers=headers_for(world.branch_user))
    assert resp.status_code == 400
    body = resp.get_json()
    assert body['success'] is False
    assert body['error'] == 'validation'


def test_approve_flow_status_codes_and_audit_diff(client, world):
    order = _create(client, world)
    oid = order['id']
    forbidden = client.put(f'/orders/{oid}/approve', json={}, headers=headers_for(world.packager))
    assert forbidden.status_code == 403

    ok = client.put(f'/orders/{oid}/approve', json={'items': [{'sku': world.skus['A'].sku, 'qtyApproved': 3}]},
                    headers=headers_for(world.manager))
    assert ok.status_code == 200
    assert ok.get_json()['message'] == 'Order approved successfully'

    conflict = client.put(f'/orders/{oid}/approve', json={}, headers=headers_for(world.manager))
    assert conflict.status_code == 409

    rows = _audit_rows('ORDER.APPROVE', oid)
    assert len(rows) == 1
    assert rows[0].meta['changes']['status'] == {'before': 'UNDER_REVIEW', 'after': 'CONFIRM_PENDING'}


def test_unknown_order_is_404(client, world):
    resp = client.get('/orders/99999999', headers=headers_for(world.manager))
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'not_found'


def test_other_branch_cannot_read_order(client, world):
    order = _create(client, world)
    other = seed_branch_world()
    resp = client.get(f"/orders/{order['id']}", headers=headers_for(other.branch_user))
    assert resp.status_code == 404
    mine = client.get(f"/orders/{order['id']}", headers=headers_for(world.branch_user))
    assert mine.status_code == 200
    assert mine.get_json()['data']['orderNumber'] == order['orderNumber']


def test_full_lifecycle_over_http(client, world, app_instance):
    oid = _create(client, world)['id']
    requester = headers_for(world.branch_user)
    manager = headers_for(world.manager)
    packager = headers_for(world.packager)

    assert client.put(f'/orders/{oid}/approve', json={}, headers=manager).status_code == 200
    assert client.put(f'/orders/{oid}/confirm', headers=requester).status_code == 200

    staged = client.put(f'/orders/{oid}/arranging-stage', data={
        'arrangingStage': Order.STATUS_ARRANGING,
        'media': (io.BytesIO(b'shelf'), 'shelf.jpg'),
    }, headers=requester, content_type='multipart/form-data')
    assert staged.status_code == 200, staged.get_json()
    media_path = staged.get_json()['data']['arrangingMedia'][0]
    assert media_path.startswith('/uploads/') and media_path.endswith('shelf.jpg')
    assert os.path.exists(os.path.join(app_instance.config['UPLOAD_FOLDER'], os.path.basename(media_path)))

    for stage in (Order.STATUS_ARRANGED, Order.STATUS_SENT_FOR_PACKAGING):
        assert client.put(f'/orders/{oid}/arranging-stage', json={'arrangingStage': stage},
                          headers=requester).status_code == 200
    for status in (Order.STATUS_UNDER_PACKAGING, Order.STATUS_PACKAGING_COMPLETED):
        assert client.put(f'/orders/{oid}/update-status', json={'newStatus': status},
                          headers=packager).status_code == 200

    no_tracking = client.put(f'/orders/{oid}/dispatch', json={}, headers=headers_for(world.dispatcher))
    assert no_tracking.status_code == 400
    dispatched = client.put(f'/orders/{oid}/dispatch', json={'trackingId': 'TRK-77'},
                            headers=headers_for(world.dispatcher))
    assert dispatched.status_code == 200
    assert dispatched.get_json()['data']['tracking']['trackingId'] == 'TRK-77'

    no_media = client.put(f'/orders/{oid}/confirm-received', data={}, headers=requester,
                          content_type='multipart/form-data')
    assert no_media.status_code == 400
    received = client.put(f'/orders/{oid}/confirm-received', data={
        'files': (io.BytesIO(b'video'), 'unboxing.mp4'),
    }, headers=requester, content_type='multipart/form-data')
    assert received.status_code == 200
    data = received.get_json()['data']
    assert data['status'] == Order.STATUS_CONFIRM_ORDER_RECEIVED
    assert data['autoCloseAt'] is not None
    item_id = data['items'][0]['id']

    missing = client.put(f'/orders/{oid}/report-received-issues', json={}, headers=requester)
    assert missing.status_code == 400
    reported = client.put(f'/orders/{oid}/report-received-issues', data={
        'issues': f'[{{"itemId": {item_id}, "reason": "scratched"}}]',
        f'media_{item_id}': (io.BytesIO(b'scratch'), 'scratch.jpg'),
    }, headers=requester, content_type='multipart/form-data')
    assert reported.status_code == 200, reported.get_json()
    issue = reported.get_json()['data']['receivedIssues'][0]
    assert issue['itemId'] == item_id and len(issue['media']) == 1

    closed = client.put(f'/orders/{oid}/close', headers=manager)
    assert closed.status_code == 200
    assert reload_order(oid).status == Order.STATUS_CLOSED_ORDER
    assert len(_audit_rows('ORDER.CLOSE', oid)) == 1


def test_rejected_transition_discards_uploaded_media(client, world, app_instance):
    oid = _create(client, world)['id']
    folder = app_instance.config['UPLOAD_FOLDER']
    before = set(os.listdir(folder)) if os.path.isdir(folder) else set()
    resp = client.put(f'/orders/{oid}/confirm-received', data={
        'media': (io.BytesIO(b'early'), 'early.jpg'),
    }, headers=headers_for(world.branch_user), content_type='multipart/form-data')
    assert resp.status_code == 409
    assert set(os.listdir(folder)) == before


def test_issue_routes(client, world):
    oid = _create(client, world)['id']
    requester = headers_for(world.branch_user)
    manager = headers_for(world.manager)
    client.put(f'/orders/{oid}/approve', json={}, headers=manager)

    raised = client.put(f'/orders/{oid}/raise-issue', json={'reason': 'Wrong size'}, headers=requester)
    assert raised.status_code == 200
    empty = client.put(f'/orders/{oid}/reply', json={'replies': []}, headers=manager)
    assert empty.status_code == 400
    replied = client.put(f'/orders/{oid}/reply', json={'replies': [{'reply': 'Swapped'}]}, headers=manager)
    assert replied.get_json()['data']['status'] == Order.STATUS_MANAGER_REPLIED

    thread = client.get(f'/orders/{oid}/issues', headers=requester)
    assert thread.status_code == 200
    assert thread.get_json()['data']['state'] == 'REPLIED'

    accepted = client.put(f'/orders/{oid}/confirm-manager-reply', headers=requester)
    assert accepted.get_json()['data']['status'] == Order.STATUS_APPROVED_ORDER
    assert len(_audit_rows('ORDER.ISSUE.CONFIRM_REPLY', oid)) == 1


def test_remarks_route(client, world):
    oid = _create(client, world)['id']
    denied = client.put(f'/orders/{oid}/remarks', json={'remarks': 'x'}, headers=headers_for(world.branch_user))
    assert denied.status_code == 403
    ok = client.put(f'/orders/{oid}/remarks', json={'remarks': 'Call before delivery'}, headers=headers_for(world.manager))
    assert ok.get_json()['data']['remarks'] == 'Call before delivery'
    rows = _audit_rows('ORDER.REMARKS.UPDATE', oid)
    assert rows and rows[-1].meta['remarks'] == 'Call before delivery'


def test_malformed_json_is_400(client, world):
    resp = client.post('/orders', data='{bad', headers={**headers_for(world.branch_user), 'Content-Type': 'application/json'})
    assert resp.status_code == 400
    assert resp.get_json()['error']['status'] == 400


def test_non_object_json_body_is_400(client, world):
    requester = headers_for(world.branch_user)
    listed = client.post('/orders', json=[{'sku': world.skus['A'].sku, 'quantity': 1}], headers=requester)
    assert listed.status_code == 400
    assert listed.get_json()['error']['detail'] == 'Request body must be a JSON object'

    oid = _create(client, world)['id']
    staged = client.put(f'/orders/{oid}/arranging-stage', json='ARRANGING', headers=requester)
    assert staged.status_code == 400
    dispatched = client.put(f'/orders/{oid}/dispatch', json='TRK-1', headers=headers_for(world.dispatcher))
    assert dispatched.status_code == 400
    assert reload_order(oid).status == Order.STATUS_UNDER_REVIEW


def test_engine_crash_discards_uploaded_media(client, world, app_instance, monkeypatch):
    def crash(self, *args, **kwargs):
        raise RuntimeError('disk full')

    monkeypatch.setattr(OrderLifecycleEngine, 'confirm_received', crash)
    oid = _create(client, world)['id']
    folder = app_instance.config['UPLOAD_FOLDER']
    before = set(os.listdir(folder)) if os.path.isdir(folder) else set()
    resp = client.put(f'/orders/{oid}/confirm-received', data={
        'media': (io.BytesIO(b'video'), 'unboxing.mp4'),
    }, headers=headers_for(world.branch_user), content_type='multipart/form-data')
    assert resp.status_code == 500
    assert set(os.listdir(folder)) == before


def test_unknown_role_claim_is_403(client, world):
    resp = client.post('/orders', json={'branchId': world.branch.id},
                       headers=jwt_headers(world.branch_user.id, 'SYSTEM', [world.branch.id]))
    assert resp.status_code == 403


def test_unknown_path_returns_error_json(client):
    resp = client.get('/non-existent-path')
    assert resp.status_code == 404
    body = resp.get_json()
    assert body['error']['status'] == 404
    assert 'detail' in body['error']
