from aiogram import Router, types
from loguru import logger
import html
import traceback
from config.config import ADMIN_CHAT_IDS

router = Router()


# Catches every exception that escaped the other routers
@router.errors()
async def errors_handler(exception: types.ErrorEvent):
    """
    Logs the error, reports it to the admin chats and apologises to the user.
    """
    logger.exception(f"Cause exception: {exception.exception}")

    tb_str = traceback.format_exception(type(exception.exception), exception.exception, exception.exception.__traceback__)
    error_text = "".join(tb_str)
    if len(error_text) > 4000:
        error_text = error_text[-4000:]
    error_message = f"<b>❗️ Unhandled Error</b>\n\n<pre>{html.escape(error_text)}</pre>"

    for admin_id in ADMIN_CHAT_IDS:
        try:
            await exception.update.bot.send_message(admin_id, error_message)
        except Exception as e:
            logger.error(f"Failed to send error notification to admin {admin_id}: {e}")

    if exception.update.callback_query:
        await exception.update.callback_query.message.answer("😔 Sorry, something went wrong. Please try again in a moment.")
    elif exception.update.message:
        await exception.update.message.answer("😔 Sorry, something went wrong. Please try again in a moment.")

    return True


@router.callback_query()
async def unhandled_callback_handler(callback: types.CallbackQuery):
    """
    Answers buttons nobody handled (old messages, users who are not partners),
    so they do not stay in the loading state.
    """
    logger.warning(f"Unhandled callback: data='{callback.data}' from user_id={callback.from_user.id}")
    await callback.answer("This button is no longer active.", show_alert=True)


@router.message()
async def unhandled_message_handler(message: types.Message) -> None:
    logger.warning(f"Unhandled message: '{message.text}' from user_id={message.from_user.id}")
    await message.answer("This bot is for delivery partners.\n\n"
                         "/online - start receiving deliveries\n"
                         "/offline - stop receiving deliveries\n"
                         "/order - show your current delivery")
