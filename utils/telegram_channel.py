import html

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from loguru import logger

from core.models import Notification, NotificationType
from database import queries as db_queries
from keyboards.partner_keyboards import get_opportunity_keyboard


class TelegramNotificationChannel:
    """
    Pushes persisted notifications to recipients who linked a Telegram chat.

    Recipients without a chat are skipped silently; the notification row
    stays in the store for the web client either way.
    """

    def __init__(self, bot: Bot):
        self.bot = bot

    async def deliver(self, notification: Notification) -> bool:
        chat_id = await db_queries.get_telegram_chat_id(notification.recipient_id)
        if not chat_id:
            return False

        text = f"<b>{html.escape(notification.title)}</b>\n\n{html.escape(notification.message)}"
        reply_markup = None
        order_id = notification.payload.get('orderId')
        if notification.type == NotificationType.DELIVERY_OPPORTUNITY and order_id:
            earning = notification.payload.get('estimated_earning')
            if earning is not None:
                text += f"\n\n💰 Estimated earning: <b>${earning:.2f}</b>"
            pickup = notification.payload.get('pickup') or {}
            if pickup.get('address'):
                text += f"\n📍 Pickup: {html.escape(str(pickup['address']))}"
            reply_markup = get_opportunity_keyboard(order_id)

        try:
            await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
            # Pickup point as a separate map pin
            if notification.type == NotificationType.DELIVERY_OPPORTUNITY:
                pickup = notification.payload.get('pickup') or {}
                if pickup.get('lat') is not None and pickup.get('lng') is not None:
                    await self.bot.send_location(chat_id=chat_id, latitude=pickup['lat'], longitude=pickup['lng'])
        except TelegramForbiddenError:
            logger.warning(f"User {notification.recipient_id} blocked the bot, notification {notification.id} not pushed.")
            return False
        except TelegramBadRequest as e:
            logger.warning(f"Telegram rejected notification {notification.id} for {notification.recipient_id}: {e}")
            return False
        return True
