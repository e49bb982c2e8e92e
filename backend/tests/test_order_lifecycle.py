from datetime import datetime, timedelta, timezone

import pytest
from flask import Flask
from sqlalchemy import select, update

from orderflow import get_db
from orderflow.models.catalog_item import CatalogItem
from orderflow.models.notification import Notification
from orderflow.models.order import Order
from orderflow.errors import OrderAuthorizationError
from orderflow.services.lifecycle import Actor, OrderLifecycleEngine
from tests.test_lifecycle_helpers import actor_for, create_order, drive_to, make_engine, reload_order
from tests.test_utils_seed import seed_branch_world


def test_create_totals_and_out_of_stock_lines(app_context: Flask):
    world = seed_branch_world({'A': 1250, 'B': 400})
    engine = make_engine()
    result = engine.create(actor_for(world.branch_user), {
        'branchId': world.branch.id,
        'inStockItems': [{'sku': world.skus['A'].sku, 'quantity': 5}],
        'outOfStockItems': [{'sku': world.skus['B'].sku, 'quantity': 2}],
        'remarks': ' urgent ',
    })
    assert result.success, result.message
    data = result.data
    assert data['status'] == Order.STATUS_UNDER_REVIEW
    assert data['orderNumber'].startswith('OR') and len(data['orderNumber']) == 8
    assert data['totalItems'] == 7
    assert data['totalValueCents'] == 1250 * 5
    assert data['remarks'] == 'urgent'
    oos = [i for i in data['items'] if i['outOfStock']]
    assert len(oos) == 1 and oos[0]['unitPriceCents'] is None and oos[0]['totalPriceCents'] is None


def test_create_notifies_requester_and_branch_managers(app_context: Flask):
    world = seed_branch_world()
    order_id = create_order(make_engine(), world)
    session = get_db()
    recipients = set(session.execute(
        select(Notification.user_id).where(Notification.order_id == order_id, Notification.type == 'ORDER_CREATED')
    ).scalars())
    assert {world.branch_user.id, world.manager.id, world.admin.id} <= recipients


def test_create_rejects_insufficient_stock(app_context: Flask):
    world = seed_branch_world(stock=3)
    result = make_engine().create(actor_for(world.branch_user), {
        'branchId': world.branch.id,
        'inStockItems': [{'sku': world.skus['A'].sku, 'quantity': 4}],
    })
    assert not result.success
    assert result.error == 'validation'
    assert result.message == f"Insufficient stock for {world.skus['A'].name}. Available: 3, Requested: 4"
    assert get_db().query(Order).filter(Order.branch_id == world.branch.id).count() == 0


@pytest.mark.parametrize('payload_builder, fragment', [
    (lambda w: {'branchId': w.branch.id}, 'at least one item'),
    (lambda w: {'branchId': w.branch.id, 'inStockItems': [{'sku': 'NOPE', 'quantity': 1}]}, 'not found'),
    (lambda w: {'branchId': w.branch.id, 'inStockItems': [{'sku': w.skus['A'].sku, 'quantity': 0}]}, 'positive integer'),
    (lambda w: {'branchId': w.branch.id,
                'inStockItems': [{'sku': w.skus['A'].sku, 'quantity': 1}],
                'outOfStockItems': [{'sku': w.skus['A'].sku, 'quantity': 1}]}, 'both in stock and out of stock'),
])
def test_create_validation(app_context: Flask, payload_builder, fragment):
    world = seed_branch_world()
    result = make_engine().create(actor_for(world.branch_user), payload_builder(world))
    assert result.error == 'validation'
    assert fragment in result.message


def test_create_outside_own_branch_denied(app_context: Flask):
    world = seed_branch_world()
    other = seed_branch_world()
    result = make_engine().create(actor_for(world.branch_user), {
        'branchId': other.branch.id,
        'inStockItems': [{'sku': world.skus['A'].sku, 'quantity': 1}],
    })
    assert result.error == 'authorization'


def test_packager_cannot_create(app_context: Flask):
    world = seed_branch_world()
    result = make_engine().create(actor_for(world.packager), {
        'branchId': world.branch.id,
        'inStockItems': [{'sku': world.skus['A'].sku, 'quantity': 1}],
    })
    assert result.error == 'authorization'


def test_approve_sets_quantities_and_recomputes_value(app_context: Flask):
    world = seed_branch_world({'A': 1000, 'B': 250})
    engine = make_engine()
    order_id = create_order(engine, world, lines=[
        {'sku': world.skus['A'].sku, 'quantity': 2},
        {'sku': world.skus['B'].sku, 'quantity': 4},
    ])
    result = engine.approve(actor_for(world.manager), order_id, {'items': [
        {'sku': world.skus['A'].sku, 'qtyApproved': 5},
    ]})
    assert result.success, result.message
    data = result.data
    assert data['status'] == Order.STATUS_CONFIRM_PENDING
    assert data['managerId'] == world.manager.id
    assert data['approvedAt'] is not None
    by_sku = {i['sku']: i for i in data['items']}
    assert by_sku[world.skus['A'].sku]['qtyApproved'] == 5
    # unlisted item keeps the requested quantity as effective quantity
    assert by_sku[world.skus['B'].sku]['qtyApproved'] is None
    assert data['totalValueCents'] == 5 * 1000 + 4 * 250


def test_approve_rejects_unknown_sku_and_negative_qty(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    manager = actor_for(world.manager)
    bad_sku = engine.approve(manager, order_id, {'items': [{'sku': 'GHOST', 'qtyApproved': 1}]})
    assert bad_sku.error == 'validation'
    negative = engine.approve(manager, order_id, {'items': [{'sku': world.skus['A'].sku, 'qtyApproved': -1}]})
    assert negative.error == 'validation'
    assert reload_order(order_id).status == Order.STATUS_UNDER_REVIEW


def test_approve_by_branch_user_or_foreign_manager_denied(app_context: Flask):
    world = seed_branch_world()
    other = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    assert engine.approve(actor_for(world.branch_user), order_id, {}).error == 'authorization'
    assert engine.approve(actor_for(other.manager), order_id, {}).error == 'authorization'
    assert engine.approve(actor_for(world.admin), order_id, {}).success


def test_approve_missing_order(app_context: Flask):
    world = seed_branch_world()
    result = make_engine().approve(actor_for(world.manager), 987654, {})
    assert result.error == 'not_found'
    assert result.http_status == 404


def test_sequential_double_approve_conflicts(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    manager = actor_for(world.manager)
    assert engine.approve(manager, order_id, {}).success
    second = engine.approve(manager, order_id, {})
    assert second.error == 'state'
    assert second.http_status == 409


def test_concurrent_writer_loses_with_stale_precondition(app_context: Flask, monkeypatch):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    original_load = engine._load

    def load_then_race(oid, requester=None):
        order = original_load(oid, requester)
        # a second writer moves the order after our read
        engine.session.execute(
            update(Order).where(Order.id == oid).values(status=Order.STATUS_CONFIRM_PENDING)
            .execution_options(synchronize_session=False)
        )
        return order

    monkeypatch.setattr(engine, '_load', load_then_race)
    result = engine.approve(actor_for(world.manager), order_id, {})
    assert not result.success
    assert result.error == 'state'
    assert 'no longer UNDER_REVIEW' in result.message
    # the racing write was rolled back together with ours
    assert reload_order(order_id).status == Order.STATUS_UNDER_REVIEW
    assert reload_order(order_id).manager_id is None


def test_confirm_only_by_requester(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    engine.approve(actor_for(world.manager), order_id, {})
    colleague = Actor(id=world.manager.id + 100000, role='BRANCH_USER', branch_ids=(world.branch.id,))
    assert engine.confirm(colleague, order_id).error == 'not_found'
    result = engine.confirm(actor_for(world.branch_user), order_id)
    assert result.success
    assert result.data['status'] == Order.STATUS_APPROVED_ORDER


def test_arranging_is_forward_only(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    drive_to(engine, world, order_id, Order.STATUS_APPROVED_ORDER)
    requester = actor_for(world.branch_user)

    assert engine.update_arranging_stage(requester, order_id, 'SOMETHING').error == 'validation'
    skipped = engine.update_arranging_stage(requester, order_id, Order.STATUS_ARRANGED)
    assert skipped.error == 'state'

    started = engine.update_arranging_stage(requester, order_id, Order.STATUS_ARRANGING, ['/uploads/shelf.jpg'])
    assert started.success
    assert started.data['arrangingStage'] == Order.STATUS_ARRANGING
    assert started.data['arrangingMedia'] == ['/uploads/shelf.jpg']
    assert started.data['arrangingStartedAt'] is not None

    jump = engine.update_arranging_stage(requester, order_id, Order.STATUS_SENT_FOR_PACKAGING)
    assert jump.error == 'state'
    assert jump.message == 'Invalid transition: ARRANGING → SENT_FOR_PACKAGING'

    assert engine.update_arranging_stage(requester, order_id, Order.STATUS_ARRANGED).success
    assert engine.update_arranging_stage(requester, order_id, Order.STATUS_ARRANGING).error == 'state'
    sent = engine.update_arranging_stage(requester, order_id, Order.STATUS_SENT_FOR_PACKAGING)
    assert sent.data['sentForPackagingAt'] is not None

    packing = engine.update_status(actor_for(world.packager), order_id, {'newStatus': Order.STATUS_UNDER_PACKAGING})
    assert packing.success
    late = engine.update_arranging_stage(requester, order_id, Order.STATUS_ARRANGED)
    assert late.error == 'state'
    assert late.message == 'Cannot change arranging stage once the order is UNDER_PACKAGING'


def test_packaging_roles_enforced(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    drive_to(engine, world, order_id, Order.STATUS_APPROVED_ORDER)
    denied = engine.update_status(actor_for(world.dispatcher), order_id, {'newStatus': Order.STATUS_UNDER_PACKAGING})
    assert denied.error == 'authorization'
    bad = engine.update_status(actor_for(world.packager), order_id, {'newStatus': Order.STATUS_CLOSED_ORDER})
    assert bad.error == 'validation'


def test_dispatch_records_tracking_and_deducts_stock(app_context: Flask):
    world = seed_branch_world({'A': 500}, stock=10)
    engine = make_engine()
    order_id = create_order(engine, world, lines=[{'sku': world.skus['A'].sku, 'quantity': 4}])
    drive_to(engine, world, order_id, Order.STATUS_PACKAGING_COMPLETED)
    dispatcher = actor_for(world.dispatcher)

    missing = engine.dispatch(dispatcher, order_id, {'courierLink': 'https://c.example'})
    assert missing.message == 'trackingId is required'
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    stale = engine.dispatch(dispatcher, order_id, {'trackingId': 'T-9', 'expectedDeliveryTime': past})
    assert stale.message == 'Expected delivery time cannot be in the past'

    eta = (datetime.now(timezone.utc) + timedelta(days=2)).replace(microsecond=0)
    result = engine.dispatch(dispatcher, order_id, {
        'trackingId': ' T-9 ', 'courierLink': 'https://c.example/T-9', 'expectedDeliveryTime': eta.isoformat(),
    }, ['/uploads/box.jpg'])
    assert result.success, result.message
    data = result.data
    assert data['status'] == Order.STATUS_IN_TRANSIT
    assert data['tracking']['trackingId'] == 'T-9'
    assert data['tracking']['courierLink'] == 'https://c.example/T-9'
    assert data['transitMedia'] == ['/uploads/box.jpg']
    assert data['dispatchedAt'] is not None
    session = get_db()
    session.expire_all()
    assert session.query(CatalogItem).filter_by(sku=world.skus['A'].sku).one().current_stock == 6


def test_stock_shortfall_on_dispatch_does_not_fail_transition(app_context: Flask):
    world = seed_branch_world({'A': 500}, stock=10)
    engine = make_engine()
    order_id = create_order(engine, world, lines=[{'sku': world.skus['A'].sku, 'quantity': 8}])
    drive_to(engine, world, order_id, Order.STATUS_PACKAGING_COMPLETED)
    session = get_db()
    session.execute(update(CatalogItem).where(CatalogItem.sku == world.skus['A'].sku).values(current_stock=3))
    session.commit()

    result = engine.dispatch(actor_for(world.dispatcher), order_id, {'trackingId': 'T-short'})
    assert result.success
    session.expire_all()
    assert session.query(CatalogItem).filter_by(sku=world.skus['A'].sku).one().current_stock == 0
    assert reload_order(order_id).status == Order.STATUS_IN_TRANSIT


def test_notification_failure_is_swallowed(app_context: Flask):
    from orderflow.services.events import EventDispatcher
    from orderflow.services.notifications import RecipientResolver
    from orderflow.services.stock_ledger import SqlStockLedger

    class BrokenSink:
        def notify_users(self, *args, **kwargs):
            raise RuntimeError('mail relay down')

    world = seed_branch_world()
    dispatcher = EventDispatcher(BrokenSink(), RecipientResolver(get_db), SqlStockLedger(get_db))
    engine = make_engine(dispatcher=dispatcher)
    result = engine.create(actor_for(world.branch_user), {
        'branchId': world.branch.id,
        'inStockItems': [{'sku': world.skus['A'].sku, 'quantity': 1}],
    })
    assert result.success
    assert reload_order(result.data['id']).status == Order.STATUS_UNDER_REVIEW


def test_confirm_received_requires_media_and_sets_deadline(app_context: Flask):
    world = seed_branch_world()
    fixed = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)  # Monday
    engine = make_engine(clock=lambda: fixed)
    order_id = create_order(engine, world)
    drive_to(engine, world, order_id, Order.STATUS_IN_TRANSIT)
    requester = actor_for(world.branch_user)

    no_media = engine.confirm_received(requester, order_id, [])
    assert no_media.error == 'validation'
    assert no_media.message == 'Please upload at least one photo or video to confirm receipt of items.'

    item_id = reload_order(order_id).items[0].id
    result = engine.confirm_received(requester, order_id, ['/uploads/recv.mp4'],
                                     {'receivedItems': [{'itemId': item_id, 'qtyReceived': 1}]})
    assert result.success, result.message
    data = result.data
    assert data['status'] == Order.STATUS_CONFIRM_ORDER_RECEIVED
    assert data['receivedMedia'] == ['/uploads/recv.mp4']
    assert data['receivedAt'] == '2026-01-05T10:00:00Z'
    assert data['autoCloseAt'] == '2026-01-14T10:00:00Z'
    assert data['items'][0]['qtyReceived'] == 1
    assert data['tracking']['deliveredAt'] == '2026-01-05T10:00:00Z'


def test_report_received_issues_restarts_deadline(app_context: Flask):
    world = seed_branch_world()
    now = {'t': datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)}
    engine = make_engine(clock=lambda: now['t'])
    order_id = create_order(engine, world)
    requester = actor_for(world.branch_user)

    early = engine.report_received_issues(requester, order_id, [{'itemId': 1, 'reason': 'x'}])
    assert early.error == 'state'

    drive_to(engine, world, order_id, Order.STATUS_CONFIRM_ORDER_RECEIVED)
    item_id = reload_order(order_id).items[0].id
    now['t'] = datetime(2026, 1, 6, 10, 0, tzinfo=timezone.utc)
    result = engine.report_received_issues(requester, order_id, [{'itemId': item_id, 'reason': 'cracked lid'}],
                                           {item_id: ['/uploads/lid.jpg']})
    assert result.success, result.message
    data = result.data
    assert data['status'] == Order.STATUS_CONFIRM_ORDER_RECEIVED
    assert data['receivedIssues'][0]['reason'] == 'cracked lid'
    assert data['receivedIssues'][0]['media'] == ['/uploads/lid.jpg']
    assert data['autoCloseAt'] == '2026-01-15T10:00:00Z'

    foreign = engine.report_received_issues(requester, order_id, [{'itemId': 999999, 'reason': 'x'}])
    assert foreign.error == 'validation'


def test_close_manual_and_terminal(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    drive_to(engine, world, order_id, Order.STATUS_CONFIRM_ORDER_RECEIVED)
    assert engine.close(actor_for(world.branch_user), order_id).error == 'authorization'
    closed = engine.close(actor_for(world.manager), order_id)
    assert closed.success
    assert closed.data['closedAt'] is not None
    assert engine.close(actor_for(world.manager), order_id).error == 'state'
    assert engine.update_remarks(actor_for(world.manager), order_id, 'late note').error == 'state'


def test_update_remarks(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    assert engine.update_remarks(actor_for(world.branch_user), order_id, 'x').error == 'authorization'
    result = engine.update_remarks(actor_for(world.manager), order_id, '  check pallet  ')
    assert result.data['remarks'] == 'check pallet'
    assert engine.update_remarks(actor_for(world.manager), order_id, 42).error == 'validation'


def test_get_order_visibility(app_context: Flask):
    world = seed_branch_world()
    other = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    assert engine.get_order(actor_for(world.branch_user), order_id).success
    assert engine.get_order(actor_for(world.packager), order_id).success
    hidden = engine.get_order(actor_for(other.branch_user), order_id)
    assert hidden.error == 'not_found'


def test_non_object_payloads_are_validation_failures(app_context: Flask):
    world = seed_branch_world()
    engine = make_engine()
    order_id = create_order(engine, world)
    calls = (
        lambda: engine.create(actor_for(world.branch_user), [{'sku': world.skus['A'].sku, 'quantity': 1}]),
        lambda: engine.update_status(actor_for(world.packager), order_id, 'UNDER_PACKAGING'),
        lambda: engine.dispatch(actor_for(world.dispatcher), order_id, ['TRK-1']),
    )
    for call in calls:
        result = call()
        assert not result.success
        assert result.error == 'validation'
        assert result.message == 'Request body must be a JSON object'
    assert reload_order(order_id).status == Order.STATUS_UNDER_REVIEW


def test_only_requesters_and_managers_post_to_issue_thread():
    assert OrderLifecycleEngine._sender_role(Actor(1, 'MANAGER')) == 'MANAGER'
    with pytest.raises(OrderAuthorizationError):
        OrderLifecycleEngine._sender_role(Actor(1, 'PACKAGER'))
