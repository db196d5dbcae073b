from aiogram import types
from aiogram.exceptions import TelegramBadRequest
from loguru import logger


async def safe_edit_or_send(
    target: types.Message | types.CallbackQuery,
    text: str,
    reply_markup: types.InlineKeyboardMarkup | None = None,
    **kwargs
) -> types.Message:
    """
    Edits the message behind a callback, or replies to a plain message.

    The callback itself must already be answered by the caller.
    """
    try:
        if isinstance(target, types.CallbackQuery):
            return await target.message.edit_text(text, reply_markup=reply_markup, **kwargs)
        return await target.answer(text, reply_markup=reply_markup, **kwargs)
    except TelegramBadRequest as e:
        if "message is not modified" in e.message:
            logger.trace("Message not modified, skipping edit.")
            return target.message if isinstance(target, types.CallbackQuery) else target
        logger.error(f"Error during safe_edit_or_send: {e}")
        if isinstance(target, types.CallbackQuery):
            return await target.message.answer(text, reply_markup=reply_markup, **kwargs)
        raise e
