from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from loguru import logger


class LoggingMiddleware(BaseMiddleware):
    """
    Binds the Telegram user and chat to every log record produced while one
    update is being handled.
    """
    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user = data.get('event_from_user')
        chat = data.get('event_chat')
        actor_id = f"tg:{user.id}" if user else "system"
        chat_id = chat.id if chat else "N/A"
        # contextvars keep the binding local to this update's task
        with logger.contextualize(actor_id=actor_id, chat_id=chat_id):
            return await handler(event, data)
