from loguru import logger

from core.coordinator import DispatchCoordinator


async def redispatch_ready_orders(coordinator: DispatchCoordinator):
    """
    Offers ready orders that are still unassigned to the partners currently in range.

    Partners already offered an order within the cooldown are skipped by the
    notifier, so a retry only reaches partners who came online or moved closer.
    """
    try:
        notified = await coordinator.redispatch_unassigned_orders()
    except Exception as e:
        logger.error(f"Re-dispatch job failed: {e}")
        return
    if notified:
        logger.info(f"Re-dispatch job offered orders to {notified} partner(s).")


async def prune_notification_cooldowns(coordinator: DispatchCoordinator):
    removed = coordinator.notifier.prune_cooldowns()
    if removed:
        logger.debug(f"Pruned {removed} expired opportunity cooldown(s).")
