"""
Expired order cleanup worker.

Cancels pending orders whose payment never arrived before
``payment_timeout_at``, through the regular cancel path.
"""
import argparse
import asyncio
import time
from typing import List, Optional

import structlog

from orderflow.monitoring.logging import setup_logging
from orderflow.monitoring.metrics import metrics
from orderflow.services import ServiceContainer, build_services

from .scheduler import install_signal_handlers, run_periodically

logger = structlog.get_logger(__name__)

JOB_NAME = "order_cleanup"


async def run_once(services: ServiceContainer, batch_size: Optional[int] = None) -> int:
    """
    Cancel one batch of expired unpaid orders.

    Returns:
        int: Number of orders cancelled
    """
    started = time.perf_counter()
    cancelled = await services.orders.cleanup_expired_orders(batch_size=batch_size)

    metrics.record_background_job(JOB_NAME, "success", cancelled)
    if cancelled:
        logger.info(
            "order_cleanup_completed",
            cancelled=cancelled,
            duration_seconds=time.perf_counter() - started,
        )
    return cancelled


async def run_cleanup(services: ServiceContainer, stop: asyncio.Event, interval: Optional[float] = None) -> None:
    await run_periodically(
        JOB_NAME,
        lambda: run_once(services),
        interval or services.settings.order_cleanup_interval_seconds,
        stop,
    )


async def start_order_cleanup(interval: Optional[float] = None, once: bool = False) -> None:
    """
    Start the cleanup worker as a standalone process.

    Notifications for cancelled orders go out through the dispatcher, which
    is drained before exit.
    """
    setup_logging()
    services = build_services()
    await services.start()
    logger.info("order_cleanup_worker_starting", once=once)

    try:
        if once:
            await run_once(services)
            return
        stop = asyncio.Event()
        install_signal_handlers(stop, "order_cleanup")
        await run_cleanup(services, stop, interval)
    finally:
        await services.stop()
        logger.info("order_cleanup_worker_stopped")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Expired order cleanup worker")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between runs")
    parser.add_argument("--once", action="store_true", help="Run a single cleanup and exit")
    args = parser.parse_args(argv)

    asyncio.run(start_order_cleanup(interval=args.interval, once=args.once))


if __name__ == "__main__":
    main()
