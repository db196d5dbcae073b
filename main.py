import asyncio

import uvicorn
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramConflictError
from aiogram.types import BotCommand, BotCommandScopeDefault
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from api import create_app
from bot_manager import safe_service_start
from config.config import API_HOST, API_PORT, REDISPATCH_INTERVAL_SECONDS, TELEGRAM_TOKEN, TIMEZONE
from config.logging_config import setup_logging
from core.coordinator import DispatchCoordinator
from core.notifications import NotificationDispatcher
from database.db import init_db
from handlers import setup_routers
from handlers.middlewares.logging_middleware import LoggingMiddleware
from handlers.scheduler import prune_notification_cooldowns, redispatch_ready_orders
from utils.telegram_channel import TelegramNotificationChannel

setup_logging()


async def set_bot_commands(bot: Bot):
    """Command menu shown to delivery partners."""
    commands = [
        BotCommand(command="online", description="🟢 Start receiving deliveries"),
        BotCommand(command="offline", description="🔴 Stop receiving deliveries"),
        BotCommand(command="order", description="📦 Current delivery"),
        BotCommand(command="available", description="🔎 Open deliveries nearby"),
    ]
    await bot.set_my_commands(commands, BotCommandScopeDefault())


def build_dispatcher(coordinator: DispatchCoordinator) -> Dispatcher:
    dp = Dispatcher()
    # Handlers receive the coordinator as a keyword argument
    dp["coordinator"] = coordinator
    main_router, errors_router = setup_routers()
    dp.include_router(main_router)
    # The error router holds the catch-all handlers and must be last
    dp.include_router(errors_router)
    dp.update.outer_middleware(LoggingMiddleware())
    return dp


async def run_bot(bot: Bot, dp: Dispatcher):
    try:
        await bot.delete_webhook(drop_pending_updates=True)
        logger.info("Previous webhook removed.")
    except Exception as e:
        logger.warning(f"Could not remove webhook: {e}")

    await set_bot_commands(bot)
    try:
        logger.info("Starting Telegram polling...")
        await dp.start_polling(bot, handle_signals=False)
    except TelegramConflictError:
        bot_info = await bot.get_me()
        logger.critical(
            f"Conflict for bot @{bot_info.username} (ID: {bot_info.id}): another instance is already polling.\n"
            "Stop it with: python bot_manager.py stop"
        )


async def start_service():
    logger.info("Initializing database...")
    await init_db()
    logger.info("Database initialized.")

    notifier = NotificationDispatcher()
    coordinator = DispatchCoordinator(notifier=notifier)

    bot = None
    dp = None
    if TELEGRAM_TOKEN:
        bot = Bot(TELEGRAM_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
        notifier.add_channel(TelegramNotificationChannel(bot))
        dp = build_dispatcher(coordinator)
    else:
        logger.info("TELEGRAM_TOKEN is not set, the partner bot is disabled.")

    scheduler = AsyncIOScheduler(timezone=TIMEZONE)
    scheduler.add_job(redispatch_ready_orders, trigger='interval', seconds=REDISPATCH_INTERVAL_SECONDS,
                      kwargs={'coordinator': coordinator})
    scheduler.add_job(prune_notification_cooldowns, trigger='interval', minutes=5,
                      kwargs={'coordinator': coordinator})
    scheduler.start()

    server = uvicorn.Server(uvicorn.Config(create_app(coordinator), host=API_HOST, port=API_PORT, log_config=None))
    # uvicorn installs the SIGINT/SIGTERM handlers; polling is stopped once the server exits
    bot_task = asyncio.create_task(run_bot(bot, dp)) if bot else None

    try:
        logger.info(f"Dispatch API listening on {API_HOST}:{API_PORT}")
        await server.serve()
    finally:
        logger.info("Starting graceful shutdown...")
        if bot_task:
            try:
                await dp.stop_polling()
                logger.info("Polling stopped")
            except RuntimeError as e:
                logger.warning(f"Polling was not running: {e}")
            bot_task.cancel()
            await asyncio.gather(bot_task, return_exceptions=True)
        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        await coordinator.shutdown()
        if bot:
            await bot.session.close()
            logger.info("Bot session closed")
        logger.info("Graceful shutdown complete.")


async def main():
    await safe_service_start(start_service)


if __name__ == '__main__':
    asyncio.run(main())
