from aiogram import types, F, Router
from aiogram.filters import BaseFilter, Command
from datetime import datetime, timezone
import html
from loguru import logger

from core.coordinator import DispatchCoordinator
from core.errors import AlreadyAssigned, InvalidTransition, NotAssignedError, OrderNotFound
from core.models import Actor, Order, OrderStatus
from database import queries as db_queries
from keyboards.partner_keyboards import get_opportunity_keyboard, get_partner_order_keyboard
from utils.callback_factories import OrderCallbackData
from .common.helpers import safe_edit_or_send

router = Router()

AVAILABLE_ORDERS_LIMIT = 10

ERROR_TEXTS = {
    AlreadyAssigned.code: "Another partner has already taken this order.",
    InvalidTransition.code: "This action is no longer available for the order.",
    OrderNotFound.code: "Order not found.",
}

STATUS_TITLES = {
    OrderStatus.ACCEPTED: "✅ You accepted the order. Head to the shop.",
    OrderStatus.PICKED_UP: "📦 Order picked up.",
    OrderStatus.ON_THE_WAY: "🛵 On the way to the customer.",
    OrderStatus.DELIVERED: "🏁 Delivered. Thank you!",
}


class IsPartner(BaseFilter):
    """Passes delivery partners whose profile is linked to this Telegram chat; injects `partner`."""

    async def __call__(self, event: types.Message | types.CallbackQuery) -> bool | dict:
        profile = await db_queries.get_profile_by_telegram_id(event.from_user.id)
        if profile is None or profile['role'] != Actor.DELIVERY_PARTNER.value:
            return False
        return {'partner': profile}


def format_partner_order(order: Order) -> str:
    """Order card shown to the partner after every step."""
    items = "\n".join(f"• {html.escape(item.product_ref)} × {item.quantity}" for item in order.items)
    return (
        f"{STATUS_TITLES.get(order.status, order.status.value)}\n\n"
        f"<b>Order #{order.id[:8]}</b> | ${order.total_amount:.2f}\n"
        f"<b>➡️ Pickup:</b> {html.escape(order.pickup.address or 'not set')}\n"
        f"<b>🏁 Delivery:</b> {html.escape(order.delivery.address or 'not set')}\n\n"
        f"{items}"
    )


@router.callback_query(OrderCallbackData.filter(), IsPartner())
async def partner_order_action(callback: types.CallbackQuery, callback_data: OrderCallbackData,
                               partner, coordinator: DispatchCoordinator) -> None:
    """Accept and every later step of a delivery go through the same transition request."""
    outcome = await coordinator.request_transition(
        callback_data.order_id, Actor.DELIVERY_PARTNER, partner['id'], callback_data.action
    )
    if not outcome.ok:
        await callback.answer(ERROR_TEXTS.get(outcome.error, outcome.message), show_alert=True)
        if outcome.error == AlreadyAssigned.code:
            await safe_edit_or_send(callback, f"Order #{callback_data.order_id[:8]} is no longer available. Send /available to see other deliveries.")
        return

    await callback.answer()
    await safe_edit_or_send(callback, format_partner_order(outcome.order), reply_markup=get_partner_order_keyboard(outcome.order))
    if outcome.order.status == OrderStatus.ACCEPTED and outcome.changed:
        await callback.message.answer("📍 Share your live location so the customer can follow the delivery.")


@router.message(Command('order'), IsPartner())
async def current_order_handler(message: types.Message, partner) -> None:
    order = await db_queries.get_active_order_for_partner(partner['id'])
    if order is None:
        await message.answer("You have no active delivery.")
        return
    await message.answer(format_partner_order(order), reply_markup=get_partner_order_keyboard(order))


@router.message(Command('available'), IsPartner())
async def available_orders_handler(message: types.Message, partner, coordinator: DispatchCoordinator) -> None:
    """Ready deliveries nobody has taken yet, near the partner's last known position."""
    candidates = await coordinator.available_orders(partner['id'])
    if not candidates:
        await message.answer("No open deliveries near you right now.\n"
                             "Make sure your live location is shared, new offers will come in automatically.")
        return

    for candidate in candidates[:AVAILABLE_ORDERS_LIMIT]:
        order = candidate.item
        await message.answer(
            f"<b>Order #{order.id[:8]}</b> | ${order.total_amount:.2f} | {candidate.distance_km:.1f} km away\n"
            f"<b>➡️ Pickup:</b> {html.escape(order.pickup.address or 'not set')}\n"
            f"<b>🏁 Delivery:</b> {html.escape(order.delivery.address or 'not set')}",
            reply_markup=get_opportunity_keyboard(order.id),
        )


@router.message(Command('online'), IsPartner())
async def go_online_handler(message: types.Message, partner) -> None:
    await db_queries.set_partner_online(partner['id'], True)
    logger.info(f"Partner {partner['id']} is online.")
    await message.answer("🟢 You are online. New deliveries nearby will be offered to you.\n"
                         "Share your live location to be matched with shops around you.")


@router.message(Command('offline'), IsPartner())
async def go_offline_handler(message: types.Message, partner) -> None:
    await db_queries.set_partner_online(partner['id'], False)
    logger.info(f"Partner {partner['id']} is offline.")
    await message.answer("🔴 You are offline. No new deliveries will be offered.")


@router.message(F.location, IsPartner())
@router.edited_message(F.location, IsPartner())
async def partner_location_handler(message: types.Message, partner, coordinator: DispatchCoordinator) -> None:
    """
    Live location updates arrive as edits of the original location message.

    With an active delivery they feed the order's track; otherwise they only
    refresh the partner's position used for matching.
    """
    lat, lng = message.location.latitude, message.location.longitude
    order = await db_queries.get_active_order_for_partner(partner['id'])
    if order is None:
        await db_queries.update_partner_location(partner['id'], lat, lng)
        logger.debug(f"Position of idle partner {partner['id']} refreshed.")
        return

    # edit_date is unix time, date is already a datetime
    if message.edit_date:
        timestamp = datetime.fromtimestamp(message.edit_date, tz=timezone.utc)
    else:
        timestamp = message.date
    outcome = await coordinator.report_location(order.id, partner['id'], lat, lng, timestamp=timestamp)
    if outcome.error == NotAssignedError.code:
        logger.warning(f"Partner {partner['id']} sent a location for order {order.id} without holding it.")
