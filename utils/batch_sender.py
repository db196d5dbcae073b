import asyncio
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger


async def broadcast_messages(
    items: Sequence[Any],
    send_function: Callable[[Any], Awaitable[Any]],
    batch_size: int = 25,
    delay_between_batches: float = 1.1,
) -> tuple[int, int]:
    """
    Sends items in concurrent batches to stay under push-channel rate limits.

    Args:
        items: Whatever send_function accepts (notifications, chat ids).
        send_function: Awaitable called once per item. An exception or an
            explicit False result counts as a failure.
        batch_size: Items sent concurrently per batch.
        delay_between_batches: Pause between two batches, in seconds.

    Returns:
        A tuple of (success_count, fail_count).
    """
    total = len(items)
    if total == 0:
        return 0, 0

    success_count = 0
    fail_count = 0

    for i in range(0, total, batch_size):
        batch = items[i:i + batch_size]

        tasks = [send_function(item) for item in batch]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for item, result in zip(batch, results):
            if isinstance(result, Exception):
                fail_count += 1
                logger.error(f"Broadcast failed for {item!r}: {result}")
            elif result is False:
                fail_count += 1
            else:
                success_count += 1

        if i + batch_size < total:
            await asyncio.sleep(delay_between_batches)

    return success_count, fail_count
