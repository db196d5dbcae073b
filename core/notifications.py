"""
Notification fan-out for order events.

Every notification is persisted first and then handed to the delivery
channels. Both steps are best effort: a failure is logged and never reaches
the caller whose transition triggered the notification.
"""
import time
from typing import Callable, Protocol

from loguru import logger

from config.config import OPPORTUNITY_COOLDOWN_SECONDS, PARTNER_EARNING_RATE
from core.models import Notification, NotificationType, Order, OrderStatus, StatusChanged
from database import queries as db_queries
from utils.batch_sender import broadcast_messages

STATUS_MESSAGES = {
    OrderStatus.PENDING: 'Your order has been placed',
    OrderStatus.ACCEPTED: 'Your order has been accepted',
    OrderStatus.PREPARING: 'Your order is being prepared',
    OrderStatus.READY: 'Your order is ready for pickup',
    OrderStatus.PICKED_UP: 'Your order has been picked up by the delivery partner',
    OrderStatus.ON_THE_WAY: 'Your order is on the way to you',
    OrderStatus.DELIVERED: 'Your order has been delivered successfully',
    OrderStatus.CANCELLED: 'Your order has been cancelled',
}


class NotificationChannel(Protocol):
    async def deliver(self, notification: Notification) -> bool: ...


class NotificationDispatcher:
    def __init__(self, channels: list[NotificationChannel] | None = None,
                 cooldown_seconds: float = OPPORTUNITY_COOLDOWN_SECONDS,
                 earning_rate: float = PARTNER_EARNING_RATE,
                 clock: Callable[[], float] = time.monotonic):
        self.channels = list(channels or [])
        self.cooldown_seconds = cooldown_seconds
        self.earning_rate = earning_rate
        self._clock = clock
        # (order_id, recipient_id, type) -> clock value of the last notification
        self._recently_notified: dict[tuple[str, str, NotificationType], float] = {}

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    async def on_order_created(self, order: Order) -> None:
        customer = await self._safe_profile(order.customer_id)
        customer_name = (customer['full_name'] if customer and customer['full_name'] else 'a customer')
        await self._emit(Notification(
            recipient_id=order.shop_id,
            type=NotificationType.NEW_ORDER,
            title='New Order Received!',
            message=f"You have a new order from {customer_name} worth ${order.total_amount:.2f}",
            payload={'orderId': order.id, 'customerId': order.customer_id},
        ))

    async def on_order_ready(self, order: Order, candidates) -> int:
        """
        Offers the delivery to every candidate at once, skipping partners already
        offered this order within the cooldown. Returns how many were notified.
        """
        earning = round(order.total_amount * self.earning_rate, 2)
        notifications = []
        for candidate in candidates:
            if not self._claim(order.id, candidate.id, NotificationType.DELIVERY_OPPORTUNITY):
                continue
            notifications.append(Notification(
                recipient_id=candidate.id,
                type=NotificationType.DELIVERY_OPPORTUNITY,
                title='New Delivery Available',
                message=f"New delivery worth ${order.total_amount:.2f} is available {candidate.distance_km:.1f} km from you",
                payload={
                    'orderId': order.id,
                    'distance_km': round(candidate.distance_km, 3),
                    'estimated_earning': earning,
                    'pickup': {'address': order.pickup.address, 'lat': order.pickup.lat, 'lng': order.pickup.lng},
                },
            ))

        if not notifications:
            logger.info(f"Order {order.id}: all candidates were notified recently, nothing sent.")
            return 0

        sent, failed = await broadcast_messages(notifications, self._emit)
        logger.info(f"Order {order.id}: delivery opportunity sent to {sent} partner(s), {failed} failed.")
        return sent

    async def on_no_candidates(self, order: Order) -> None:
        if not self._claim(order.id, order.shop_id, NotificationType.NO_PARTNERS_NEARBY):
            return
        await self._emit(Notification(
            recipient_id=order.shop_id,
            type=NotificationType.NO_PARTNERS_NEARBY,
            title='No Delivery Partners Nearby',
            message=f"No delivery partners are available near order {order.id[:8]} yet. We will keep looking.",
            payload={'orderId': order.id},
        ))

    async def on_status_changed(self, event: StatusChanged) -> None:
        await self._emit(Notification(
            recipient_id=event.order.customer_id,
            type=NotificationType.STATUS_UPDATE,
            title='Order Update',
            message=STATUS_MESSAGES.get(event.new_status, 'Your order status has been updated'),
            payload={'orderId': event.order.id, 'status': event.new_status.value, 'previousStatus': event.old_status.value},
        ))

    def prune_cooldowns(self) -> int:
        """Drops dedup entries older than the cooldown. Returns how many were removed."""
        threshold = self._clock() - self.cooldown_seconds
        expired = [key for key, notified_at in self._recently_notified.items() if notified_at <= threshold]
        for key in expired:
            del self._recently_notified[key]
        return len(expired)

    def _claim(self, order_id: str, recipient_id: str, notification_type: NotificationType) -> bool:
        key = (order_id, recipient_id, notification_type)
        now = self._clock()
        notified_at = self._recently_notified.get(key)
        if notified_at is not None and now - notified_at < self.cooldown_seconds:
            return False
        self._recently_notified[key] = now
        return True

    async def _emit(self, notification: Notification) -> bool:
        try:
            notification.id = await db_queries.create_notification(notification)
        except Exception as e:
            logger.error(f"Failed to persist {notification.type.value} notification for {notification.recipient_id}: {e}")
            return False

        for channel in self.channels:
            try:
                await channel.deliver(notification)
            except Exception as e:
                logger.warning(f"Channel {type(channel).__name__} failed to deliver notification {notification.id} to {notification.recipient_id}: {e}")
        return True

    @staticmethod
    async def _safe_profile(user_id: str):
        try:
            return await db_queries.get_profile(user_id)
        except Exception as e:
            logger.warning(f"Could not load profile {user_id}: {e}")
            return None
