from aiogram import types
from aiogram.utils.keyboard import InlineKeyboardBuilder

from core.models import Action, Order, OrderStatus
from utils.callback_factories import OrderCallbackData

# Next partner step for each status of an assigned order
NEXT_PARTNER_ACTION = {
    OrderStatus.ACCEPTED: (Action.PICK_UP, '📦 Picked up'),
    OrderStatus.READY: (Action.PICK_UP, '📦 Picked up'),
    OrderStatus.PICKED_UP: (Action.START_DELIVERY, '🛵 On my way'),
    OrderStatus.ON_THE_WAY: (Action.DELIVER, '🏁 Delivered'),
}


def _navigation_url(lat: float, lng: float) -> str:
    return f"https://www.google.com/maps/dir/?api=1&destination={lat},{lng}"


def get_opportunity_keyboard(order_id: str) -> types.InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text='✅ Accept delivery', callback_data=OrderCallbackData(action=Action.ACCEPT.value, order_id=order_id))
    return builder.as_markup()


def get_partner_order_keyboard(order: Order) -> types.InlineKeyboardMarkup | None:
    """Button for the partner's next step plus a route to the current destination."""
    if order.is_terminal:
        return None
    builder = InlineKeyboardBuilder()
    has_buttons = False
    next_step = NEXT_PARTNER_ACTION.get(order.status)
    if next_step:
        action, text = next_step
        builder.button(text=text, callback_data=OrderCallbackData(action=action.value, order_id=order.id))
        has_buttons = True

    destination = order.delivery if order.status in (OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY) else order.pickup
    if destination.has_coordinates:
        builder.button(text="🗺️ Route", url=_navigation_url(destination.lat, destination.lng))
        has_buttons = True

    if not has_buttons:
        return None
    builder.adjust(1)
    return builder.as_markup()
