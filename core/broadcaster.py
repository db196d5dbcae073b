"""
Live position tracking for orders in delivery.

Samples reported by the assigned partner are appended to the order's track and
pushed to every watcher of the order. Each watcher owns a coalescing channel:
one pending position and one pending status at most, newer values overwrite
undelivered older ones. A slow watcher therefore skips intermediate samples
but always ends up with the latest one, and the sender never queues.
"""
import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from loguru import logger

from config.config import TIMEZONE
from core.errors import NotAssignedError, OrderNotFound, StaleOrderError
from core.geo import validate_coordinates
from core.models import LocationSample, OrderStatus, StatusChanged
from database import queries as db_queries

POSITION = "position"
STATUS = "status"

_sequence = itertools.count()


@dataclass(frozen=True)
class TrackingUpdate:
    kind: str
    order_id: str
    data: dict[str, Any]
    seq: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "order_id": self.order_id, **self.data}


class TrackingSubscription:
    """
    Handle returned by LocationBroadcaster.subscribe().

    Iterate it with `async for update in subscription`; iteration ends after
    unsubscribe() or once the order reaches a terminal status.
    """

    def __init__(self, order_id: str, watcher_id: str, on_unsubscribe: Callable[["TrackingSubscription"], None] | None = None):
        self.order_id = order_id
        self.watcher_id = watcher_id
        self._pending: dict[str, TrackingUpdate] = {}
        self._wakeup = asyncio.Event()
        self._closed = False
        self._on_unsubscribe = on_unsubscribe

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, kind: str, data: dict[str, Any]) -> None:
        """Replaces any undelivered update of the same kind."""
        if self._closed:
            return
        self._pending[kind] = TrackingUpdate(kind=kind, order_id=self.order_id, data=data, seq=next(_sequence))
        self._wakeup.set()

    def seed(self, kind: str, data: dict[str, Any]) -> None:
        """Offers data unless a fresher update of that kind is already pending."""
        if kind not in self._pending:
            self.offer(kind, data)

    def close(self) -> None:
        """Stops the stream once the already pending updates are drained."""
        self._closed = True
        self._wakeup.set()

    def unsubscribe(self) -> None:
        self._pending.clear()
        self.close()
        if self._on_unsubscribe is not None:
            self._on_unsubscribe(self)
            self._on_unsubscribe = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> TrackingUpdate:
        while True:
            if self._pending:
                kind = min(self._pending, key=lambda k: self._pending[k].seq)
                return self._pending.pop(kind)
            if self._closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()


class LocationBroadcaster:
    def __init__(self):
        self._subscriptions: dict[str, set[TrackingSubscription]] = {}
        # (order_id, partner_id) -> timestamp of the last accepted sample
        self._last_accepted: dict[tuple[str, str], datetime] = {}

    def subscriber_count(self, order_id: str) -> int:
        return len(self._subscriptions.get(order_id, ()))

    async def report_position(self, order_id: str, partner_id: str, lat: float, lng: float,
                              status_at_sample: OrderStatus | None = None,
                              timestamp: datetime | None = None) -> LocationSample | None:
        """
        Records a position sample from the assigned partner and publishes it.

        Returns the stored sample, or None when the sample is not newer than
        the last accepted one for this (order, partner) pair.
        Raises StaleOrderError for unknown or terminal orders and
        NotAssignedError for a partner who does not hold the order.
        """
        validate_coordinates(lat, lng)
        order = await db_queries.read_order(order_id)
        if order is None or order.is_terminal:
            state = order.status.value if order else "unknown"
            raise StaleOrderError(f"Order {order_id} is {state}, sample dropped", order_id=order_id)
        if order.delivery_partner_id != partner_id:
            raise NotAssignedError(f"Partner {partner_id} is not assigned to order {order_id}", order_id=order_id)

        timestamp = timestamp or datetime.now(TIMEZONE)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=TIMEZONE)

        last = await self._last_timestamp(order_id, partner_id)
        if last is not None and timestamp <= last:
            logger.debug(f"Order {order_id}: sample from {partner_id} at {timestamp.isoformat()} is not newer than {last.isoformat()}, discarded.")
            return None

        sample = LocationSample(
            order_id=order_id, partner_id=partner_id, timestamp=timestamp,
            lat=lat, lng=lng, status=status_at_sample or order.status,
        )
        appended = await db_queries.add_tracking_sample(sample)
        # The order may have ended while this sample was in flight
        current = await db_queries.read_order(order_id)
        if current is None or current.is_terminal:
            self._forget(order_id)
            if not appended:
                state = current.status.value if current else "unknown"
                raise StaleOrderError(f"Order {order_id} became {state}, sample dropped", order_id=order_id)
            return sample
        if not appended:
            return None

        self._last_accepted[(order_id, partner_id)] = timestamp
        for subscription in list(self._subscriptions.get(order_id, ())):
            subscription.offer(POSITION, sample.to_dict())
        await db_queries.update_partner_location(partner_id, lat, lng)
        return sample

    async def subscribe(self, order_id: str, watcher_id: str) -> TrackingSubscription:
        """
        Opens a tracking stream for the order, seeded with the latest known position.

        A terminal order yields its final status once and ends.
        """
        order = await db_queries.read_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

        subscription = TrackingSubscription(order_id, watcher_id, on_unsubscribe=self._remove)
        if order.is_terminal:
            subscription.offer(STATUS, {"status": order.status.value})
            subscription.close()
            return subscription

        # Registered before the next await so a terminal status change cannot slip past it
        self._subscriptions.setdefault(order_id, set()).add(subscription)
        logger.info(f"Watcher {watcher_id} subscribed to order {order_id} ({self.subscriber_count(order_id)} active).")

        last_sample = await db_queries.get_last_sample(order_id)
        if last_sample is not None:
            subscription.seed(POSITION, last_sample.to_dict())
        return subscription

    async def handle_status_changed(self, event: StatusChanged) -> None:
        order_id = event.order.id
        subscriptions = self._subscriptions.get(order_id, set())
        for subscription in list(subscriptions):
            subscription.offer(STATUS, {"status": event.new_status.value, "old_status": event.old_status.value})

        if event.new_status.is_terminal:
            for subscription in list(subscriptions):
                subscription.close()
            self._subscriptions.pop(order_id, None)
            self._forget(order_id)
            if subscriptions:
                logger.info(f"Order {order_id} is {event.new_status.value}: closed {len(subscriptions)} tracking stream(s).")

    async def track(self, order_id: str) -> list[LocationSample]:
        return await db_queries.get_track(order_id)

    async def close_all(self) -> None:
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription.close()
        self._subscriptions.clear()

    async def _last_timestamp(self, order_id: str, partner_id: str) -> datetime | None:
        key = (order_id, partner_id)
        if key not in self._last_accepted:
            last_sample = await db_queries.get_last_sample(order_id, partner_id)
            if last_sample is None:
                return None
            self._last_accepted[key] = last_sample.timestamp
        return self._last_accepted[key]

    def _forget(self, order_id: str) -> None:
        for key in [key for key in self._last_accepted if key[0] == order_id]:
            del self._last_accepted[key]

    def _remove(self, subscription: TrackingSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.order_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.order_id]
        logger.info(f"Watcher {subscription.watcher_id} unsubscribed from order {subscription.order_id}.")
