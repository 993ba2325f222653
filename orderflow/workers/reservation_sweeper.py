"""
Reservation expiry sweeper.

Releases stock holds past their expiry through the same claim-then-release
path as cancellation. Orders are left alone; unpaid orders are cancelled by
the order cleanup worker.
"""
import argparse
import asyncio
import time
from typing import List, Optional

import structlog

from orderflow.core.orders import conflict_guard
from orderflow.monitoring.logging import setup_logging
from orderflow.monitoring.metrics import metrics
from orderflow.services import ServiceContainer, build_services

from .scheduler import install_signal_handlers, run_periodically

logger = structlog.get_logger(__name__)

JOB_NAME = "reservation_sweep"


async def run_once(services: ServiceContainer, batch_size: Optional[int] = None) -> int:
    """
    Expire one batch of stale holds.

    Returns:
        int: Number of reservations expired
    """
    started = time.perf_counter()
    async with conflict_guard(JOB_NAME):
        async with services.session_factory() as db:
            async with db.begin():
                expired = await services.reservations.expire_stale(
                    db, batch_size=batch_size or services.settings.cleanup_batch_size
                )

    metrics.record_background_job(JOB_NAME, "success", expired)
    if expired:
        logger.info(
            "reservation_sweep_completed",
            expired=expired,
            duration_seconds=time.perf_counter() - started,
        )
    return expired


async def run_sweeper(services: ServiceContainer, stop: asyncio.Event, interval: Optional[float] = None) -> None:
    await run_periodically(
        JOB_NAME,
        lambda: run_once(services),
        interval or services.settings.reservation_sweep_interval_seconds,
        stop,
    )


async def start_reservation_sweeper(interval: Optional[float] = None, once: bool = False) -> None:
    """
    Start the sweeper as a standalone process.

    Args:
        interval: Seconds between sweeps (settings default when None)
        once: Run a single sweep and exit
    """
    setup_logging()
    services = build_services()
    logger.info("reservation_sweeper_starting", once=once)

    try:
        if once:
            await run_once(services)
            return
        stop = asyncio.Event()
        install_signal_handlers(stop, "reservation_sweeper")
        await run_sweeper(services, stop, interval)
    finally:
        await services.stop()
        logger.info("reservation_sweeper_stopped")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Reservation expiry sweeper")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args(argv)

    asyncio.run(start_reservation_sweeper(interval=args.interval, once=args.once))


if __name__ == "__main__":
    main()
