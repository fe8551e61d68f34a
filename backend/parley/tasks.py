"""Background loops started by the application lifespan."""
import asyncio
import logging
from collections.abc import Awaitable, Callable

from parley.config import settings
from parley.services.presence import PresenceTracker
from parley.services.search_sync import SearchSyncWorker

logger = logging.getLogger(__name__)

# Stuck-task alert is checked every N drain rounds
STUCK_REPORT_EVERY = 120


async def run_periodically(
    name: str, interval: float, job: Callable[[], Awaitable[object]]
) -> None:
    """Run ``job`` every ``interval`` seconds until cancelled.

    A failing round is logged and the loop keeps going.
    """
    logger.info("Starting background task %s (every %.1fs)", name, interval)
    while True:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background task %s failed", name)
        await asyncio.sleep(interval)


def start_background_tasks(
    presence: PresenceTracker, worker: SearchSyncWorker
) -> list[asyncio.Task]:
    rounds = 0

    async def sync_round():
        nonlocal rounds
        await worker.drain()
        rounds += 1
        if rounds % STUCK_REPORT_EVERY == 0:
            await worker.report_stuck()

    return [
        asyncio.create_task(
            run_periodically("presence-sweep", settings.presence_sweep_interval, presence.sweep)
        ),
        asyncio.create_task(
            run_periodically("search-sync", settings.search_sync_interval, sync_round)
        ),
    ]


async def stop_background_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
