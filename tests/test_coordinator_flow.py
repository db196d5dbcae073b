import asyncio
import sys
import os
from datetime import datetime, timedelta, timezone
import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from conftest import NEAR_LAT, NEAR_LNG, SHOP_LAT, SHOP_LNG
from core.broadcaster import POSITION, STATUS
from core.errors import AlreadyAssigned, InvalidTransition, NotAssignedError, OrderNotFound, StaleOrderError
from core.models import NotificationType, OrderStatus
from database import queries as db_queries

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


async def _next(subscription, timeout=1):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


@pytest.mark.asyncio
async def test_end_to_end_delivery(marketplace, coordinator, order_items):
    """
    Полный сценарий: магазин готовит заказ, ближний курьер его забирает,
    клиент видит три точки маршрута, доставка закрывает поток.
    """
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate',
                                           NEAR_LAT, NEAR_LNG, pickup_lat=SHOP_LAT, pickup_lng=SHOP_LNG)
    assert order.status == OrderStatus.PENDING
    assert order.total_amount == 5.0

    for action, expected in (('accept', 'accepted'), ('prepare', 'preparing'), ('mark_ready', 'ready')):
        outcome = await coordinator.request_transition(order.id, 'shop', 'shop-1', action)
        assert outcome.ok and outcome.status.value == expected
    await coordinator.wait_for_background_tasks()

    # Reaching `ready` unassigned broadcasts the opportunity to partners within 5 km only
    near_offers = await db_queries.get_notifications('partner-near')
    assert [n.type for n in near_offers] == [NotificationType.DELIVERY_OPPORTUNITY]
    assert near_offers[0].payload['distance_km'] == pytest.approx(0.83, abs=0.05)
    assert await db_queries.get_notifications('partner-far') == []

    outcome = await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'accept')
    assert outcome.ok and outcome.status == OrderStatus.ACCEPTED

    stream = await coordinator.subscribe(order.id, 'customer-1')
    positions = []

    await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'pick_up')
    assert (await _next(stream)).data['status'] == 'picked_up'

    points = [(28.6150, 77.2100), (28.6170, 77.2120), (28.6190, 77.2140)]
    for i, (lat, lng) in enumerate(points):
        if i == 1:
            await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'start_delivery')
            assert (await _next(stream)).data['status'] == 'on_the_way'
        ping = await coordinator.report_location(order.id, 'partner-near', lat, lng, timestamp=T0 + timedelta(seconds=i))
        assert ping.accepted
        update = await _next(stream)
        assert update.kind == POSITION
        positions.append((update.data['lat'], update.data['lng']))

    assert positions == points

    outcome = await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'deliver')
    assert outcome.status == OrderStatus.DELIVERED
    final = await _next(stream)
    assert (final.kind, final.data['status']) == (STATUS, 'delivered')
    with pytest.raises(StopAsyncIteration):
        await _next(stream)

    late = await coordinator.report_location(order.id, 'partner-near', 28.62, 77.215, timestamp=T0 + timedelta(seconds=10))
    assert not late.accepted
    assert late.error == StaleOrderError.code
    assert len(await coordinator.track(order.id)) == 3

    customer_updates = [n.payload['status'] for n in await db_queries.get_notifications('customer-1')]
    assert customer_updates == ['accepted', 'preparing', 'ready', 'accepted', 'picked_up', 'on_the_way', 'delivered']


@pytest.mark.asyncio
async def test_transition_outcomes_carry_error_codes(marketplace, coordinator, order_items):
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate', NEAR_LAT, NEAR_LNG)

    outcome = await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'deliver')
    assert not outcome.ok and outcome.error == InvalidTransition.code

    await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'accept')
    outcome = await coordinator.request_transition(order.id, 'delivery_partner', 'partner-far', 'accept')
    assert outcome.error == AlreadyAssigned.code

    outcome = await coordinator.request_transition('missing', 'shop', 'shop-1', 'accept')
    assert outcome.error == OrderNotFound.code


@pytest.mark.asyncio
async def test_location_from_foreign_partner(marketplace, coordinator, order_items):
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate', NEAR_LAT, NEAR_LNG)
    await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'accept')

    outcome = await coordinator.report_location(order.id, 'partner-far', 28.62, 77.215)
    assert not outcome.accepted
    assert outcome.error == NotAssignedError.code


@pytest.mark.asyncio
async def test_pickup_falls_back_to_shop_and_delivery_is_geocoded(marketplace, coordinator, geocode, order_items):
    geocode.return_value = (28.6129, 77.2295)
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate, New Delhi')

    geocode.assert_awaited_once_with('India Gate, New Delhi')
    assert (order.pickup.lat, order.pickup.lng) == (SHOP_LAT, SHOP_LNG)
    assert order.pickup.address == 'Connaught Place, New Delhi'
    assert (order.delivery.lat, order.delivery.lng) == (28.6129, 77.2295)

    notifications = await db_queries.get_notifications('shop-1')
    assert notifications[0].type == NotificationType.NEW_ORDER


@pytest.mark.asyncio
async def test_order_without_items_is_rejected(marketplace, coordinator):
    with pytest.raises(ValueError):
        await coordinator.create_order('customer-1', 'shop-1', [], 'India Gate', NEAR_LAT, NEAR_LNG)


@pytest.mark.asyncio
async def test_redispatch_reaches_partner_who_came_online(marketplace, coordinator, order_items):
    await db_queries.set_partner_online('partner-near', False)
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate', NEAR_LAT, NEAR_LNG)
    for action in ('accept', 'prepare', 'mark_ready'):
        await coordinator.request_transition(order.id, 'shop', 'shop-1', action)
    await coordinator.wait_for_background_tasks()

    shop_notices = [n.type for n in await db_queries.get_notifications('shop-1')]
    assert NotificationType.NO_PARTNERS_NEARBY in shop_notices
    assert await coordinator.redispatch_unassigned_orders() == 0

    await db_queries.set_partner_online('partner-near', True)
    assert await coordinator.redispatch_unassigned_orders() == 1
    # Within the cooldown the same partner is not offered the order again
    assert await coordinator.redispatch_unassigned_orders() == 0


@pytest.mark.asyncio
async def test_mark_ready_returns_before_offers_are_delivered(marketplace, coordinator, order_items):
    release = asyncio.Event()
    offered = []

    class SlowChannel:
        async def deliver(self, notification):
            if notification.type == NotificationType.DELIVERY_OPPORTUNITY:
                await release.wait()
                offered.append(notification.recipient_id)
            return True

    coordinator.notifier.add_channel(SlowChannel())
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate', NEAR_LAT, NEAR_LNG)
    for action in ('accept', 'prepare'):
        await coordinator.request_transition(order.id, 'shop', 'shop-1', action)

    outcome = await asyncio.wait_for(coordinator.request_transition(order.id, 'shop', 'shop-1', 'mark_ready'), 1)
    assert outcome.status == OrderStatus.READY
    assert offered == []

    release.set()
    await coordinator.wait_for_background_tasks()
    assert offered == ['partner-near']


@pytest.mark.asyncio
async def test_partner_sees_open_orders_near_them(marketplace, coordinator, order_items):
    order = await coordinator.create_order('customer-1', 'shop-1', order_items, 'India Gate', NEAR_LAT, NEAR_LNG)
    assert await coordinator.available_orders('partner-near') == []

    for action in ('accept', 'prepare', 'mark_ready'):
        await coordinator.request_transition(order.id, 'shop', 'shop-1', action)
    await coordinator.wait_for_background_tasks()

    available = await coordinator.available_orders('partner-near')
    assert [c.item.id for c in available] == [order.id]
    assert available[0].distance_km == pytest.approx(0.83, abs=0.05)
    # 6 km away is outside the delivery radius
    assert await coordinator.available_orders('partner-far') == []

    await coordinator.request_transition(order.id, 'delivery_partner', 'partner-near', 'accept')
    assert await coordinator.available_orders('partner-near') == []
    assert [o.id for o in await coordinator.list_orders('accepted', partner_id='partner-near')] == [order.id]


# --- Задачи планировщика ---

@pytest.mark.asyncio
async def test_redispatch_job_logs_and_survives_failures(mocker):
    from handlers.scheduler import prune_notification_cooldowns, redispatch_ready_orders
    coordinator = mocker.AsyncMock()
    coordinator.redispatch_unassigned_orders.side_effect = RuntimeError("database is locked")
    coordinator.notifier = mocker.MagicMock()
    coordinator.notifier.prune_cooldowns.return_value = 2

    await redispatch_ready_orders(coordinator)
    await prune_notification_cooldowns(coordinator)

    coordinator.redispatch_unassigned_orders.assert_awaited_once()
    coordinator.notifier.prune_cooldowns.assert_called_once()
