"""
Entry point of the dispatch core for every outer surface (HTTP, Telegram, scheduler).

The coordinator owns one instance of each component, wires the state
machine's StatusChanged events to the broadcaster, the notifier and the
dispatch step, and turns component exceptions into outcome records so that
callers never have to catch DispatchError themselves. Offering a newly
ready order to partners runs as a background task, so the shop's transition
returns before the offers are delivered.
"""
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from loguru import logger

from config.config import DISPATCH_ON_READY, TIMEZONE
from core.broadcaster import LocationBroadcaster, TrackingSubscription
from core.errors import DispatchError, NoCandidatesFound, OrderNotFound, StaleOrderError
from core.matcher import Candidate, GeospatialMatcher
from core.models import Location, LocationSample, Order, OrderItem, OrderStatus, StatusChanged
from core.notifications import NotificationDispatcher
from core.state_machine import OrderStateMachine
from database import queries as db_queries
from utils.geocoder import geocode_address


@dataclass(frozen=True)
class TransitionOutcome:
    ok: bool
    status: OrderStatus | None = None
    changed: bool = False
    error: str | None = None
    message: str | None = None
    order: Order | None = None


@dataclass(frozen=True)
class LocationOutcome:
    accepted: bool
    error: str | None = None
    message: str | None = None
    sample: LocationSample | None = None


class DispatchCoordinator:
    def __init__(self, state_machine: OrderStateMachine | None = None,
                 matcher: GeospatialMatcher | None = None,
                 broadcaster: LocationBroadcaster | None = None,
                 notifier: NotificationDispatcher | None = None,
                 dispatch_on_ready: bool = DISPATCH_ON_READY,
                 geocode=geocode_address):
        self.state_machine = state_machine or OrderStateMachine()
        self.matcher = matcher or GeospatialMatcher()
        self.broadcaster = broadcaster or LocationBroadcaster()
        self.notifier = notifier or NotificationDispatcher()
        self.dispatch_on_ready = dispatch_on_ready
        self._geocode = geocode
        # Dispatch runs off the transition path; tasks are kept until done
        self._background_tasks: set[asyncio.Task] = set()
        self.state_machine.add_listener(self._on_status_changed)

    # --- Orders ---

    async def create_order(self, customer_id: str, shop_id: str, items: Iterable[OrderItem | dict],
                           delivery_address: str, delivery_lat: float | None = None,
                           delivery_lng: float | None = None, pickup_address: str | None = None,
                           pickup_lat: float | None = None, pickup_lng: float | None = None,
                           estimated_delivery_time: datetime | None = None) -> Order:
        """
        Creates an order in `pending` and notifies the shop.

        Pickup defaults to the shop's registered location; a delivery address
        without coordinates is geocoded.
        """
        items = tuple(item if isinstance(item, OrderItem) else OrderItem(**item) for item in items)
        if not items:
            raise ValueError("An order needs at least one item")

        if pickup_lat is None or pickup_lng is None:
            shop = await db_queries.get_profile(shop_id)
            if shop is not None:
                pickup_address = pickup_address or shop['shop_address']
                pickup_lat, pickup_lng = shop['shop_lat'], shop['shop_lng']

        if (delivery_lat is None or delivery_lng is None) and delivery_address:
            coordinates = await self._geocode(delivery_address)
            if coordinates:
                delivery_lat, delivery_lng = coordinates

        now = datetime.now(TIMEZONE)
        order = Order(
            id=uuid.uuid4().hex,
            customer_id=customer_id,
            shop_id=shop_id,
            items=items,
            total_amount=round(sum(item.line_total for item in items), 2),
            status=OrderStatus.PENDING,
            pickup=Location(pickup_address or '', pickup_lat, pickup_lng),
            delivery=Location(delivery_address, delivery_lat, delivery_lng),
            created_at=now,
            updated_at=now,
            estimated_delivery_time=estimated_delivery_time,
        )
        await db_queries.create_order(order)
        logger.bind(actor_id=customer_id).info(f"Order {order.id} created for shop {shop_id}, total {order.total_amount:.2f}.")
        await self.notifier.on_order_created(order)
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await db_queries.read_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    async def list_orders(self, status: OrderStatus | str | None = None, unassigned: bool = False,
                          partner_id: str | None = None) -> list[Order]:
        """Raises ValueError for an unknown status name."""
        if status is not None:
            status = OrderStatus(status)
        return await db_queries.list_orders(status=status, unassigned=unassigned, partner_id=partner_id)

    async def request_transition(self, order_id: str, actor, actor_id: str, action) -> TransitionOutcome:
        try:
            result = await self.state_machine.apply(order_id, actor, actor_id, action)
        except DispatchError as e:
            logger.bind(actor_id=actor_id).info(f"Transition '{action}' on order {order_id} refused: {e.code} ({e.message}).")
            return TransitionOutcome(ok=False, error=e.code, message=e.message)
        return TransitionOutcome(ok=True, status=result.order.status, changed=result.changed, order=result.order)

    # --- Tracking ---

    async def report_location(self, order_id: str, partner_id: str, lat: float, lng: float,
                              timestamp: datetime | None = None) -> LocationOutcome:
        try:
            sample = await self.broadcaster.report_position(order_id, partner_id, lat, lng, timestamp=timestamp)
        except StaleOrderError as e:
            logger.info(f"Stale location ping from {partner_id}: {e.message}")
            return LocationOutcome(accepted=False, error=e.code, message=e.message)
        except DispatchError as e:
            logger.warning(f"Location ping from {partner_id} refused: {e.message}")
            return LocationOutcome(accepted=False, error=e.code, message=e.message)
        if sample is None:
            return LocationOutcome(accepted=False, message="Sample is not newer than the last accepted one")
        return LocationOutcome(accepted=True, sample=sample)

    async def subscribe(self, order_id: str, watcher_id: str) -> TrackingSubscription:
        """Raises OrderNotFound for an unknown order; the stream itself never raises."""
        return await self.broadcaster.subscribe(order_id, watcher_id)

    async def track(self, order_id: str) -> list[LocationSample]:
        await self.get_order(order_id)
        return await self.broadcaster.track(order_id)

    # --- Matching ---

    async def nearby_shops(self, lat: float, lng: float, radius_km: float | None = None) -> list[Candidate]:
        return await self.matcher.nearby_shops(lat, lng, radius_km)

    async def available_orders(self, partner_id: str, radius_km: float | None = None) -> list[Candidate]:
        """
        Ready, unassigned orders with a pickup point near the partner, nearest first.

        Empty while the partner's position is unknown.
        """
        partner = await db_queries.get_profile(partner_id)
        if partner is None or partner['latitude'] is None or partner['longitude'] is None:
            return []
        orders = await db_queries.list_orders(status=OrderStatus.READY, unassigned=True)
        return self.matcher.orders_near(partner['latitude'], partner['longitude'], orders, radius_km)

    async def dispatch_order(self, order: Order) -> int:
        """
        Offers a ready, unassigned order to every partner in range.

        Returns how many partners were notified. Nobody in range is not an
        error here: the shop is told and the scheduler retries later.
        """
        if order.delivery_partner_id is not None or order.status != OrderStatus.READY:
            return 0
        try:
            candidates = await self.matcher.dispatch_candidates(order)
        except NoCandidatesFound as e:
            logger.warning(e.message)
            await self.notifier.on_no_candidates(order)
            return 0
        return await self.notifier.on_order_ready(order, candidates)

    async def redispatch_unassigned_orders(self) -> int:
        """Re-runs matching for every ready order still waiting for a partner."""
        orders = await db_queries.list_orders(status=OrderStatus.READY, unassigned=True)
        if not orders:
            return 0
        logger.info(f"Re-dispatching {len(orders)} ready order(s) without a partner.")
        results = await asyncio.gather(*(self.dispatch_order(order) for order in orders), return_exceptions=True)
        notified = 0
        for order, result in zip(orders, results):
            if isinstance(result, Exception):
                logger.error(f"Re-dispatch of order {order.id} failed: {result}")
            else:
                notified += result
        return notified

    async def wait_for_background_tasks(self) -> None:
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        await self.wait_for_background_tasks()
        await self.broadcaster.close_all()

    def _spawn(self, coroutine, description: str) -> None:
        task = asyncio.create_task(coroutine)
        self._background_tasks.add(task)
        task.add_done_callback(lambda t: self._on_background_done(t, description))

    def _on_background_done(self, task: asyncio.Task, description: str) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{description} failed: {task.exception()}")

    async def _on_status_changed(self, event: StatusChanged) -> None:
        await self.broadcaster.handle_status_changed(event)
        await self.notifier.on_status_changed(event)
        if (self.dispatch_on_ready and event.new_status == OrderStatus.READY
                and event.order.delivery_partner_id is None):
            self._spawn(self._dispatch_current(event.order.id), f"Dispatch of order {event.order.id}")

    async def _dispatch_current(self, order_id: str) -> None:
        order = await db_queries.read_order(order_id)
        if order is not None:
            await self.dispatch_order(order)
