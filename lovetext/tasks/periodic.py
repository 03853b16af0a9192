"""
Background loops started with the web process.

Each loop awaits its job, logs anything it raises, then sleeps for the
interval, so one run always finishes before the next begins.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


async def run_periodically(name: str, interval_seconds: float, job: Callable[[], Awaitable]) -> None:
    logger.info("[Tasks] %s loop started (every %ss)", name, interval_seconds)
    while True:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[Tasks] %s run failed", name)
        await asyncio.sleep(interval_seconds)


async def dispatch_due_messages(context) -> None:
    await context.dispatcher.run_cycle()


async def expire_lapsed_entitlements(context) -> None:
    revoked = await run_in_threadpool(context.reconciler.expire_lapsed)
    if revoked:
        logger.info("[Tasks] Expiry sweep revoked %s customer(s)", len(revoked))


def start_background_tasks(context) -> List[asyncio.Task]:
    settings = context.settings
    return [
        asyncio.create_task(
            run_periodically(
                "dispatch",
                settings.dispatch_interval_seconds,
                lambda: dispatch_due_messages(context),
            )
        ),
        asyncio.create_task(
            run_periodically(
                "expiry-sweep",
                settings.expiry_sweep_interval_seconds,
                lambda: expire_lapsed_entitlements(context),
            )
        ),
    ]


async def stop_background_tasks(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
