"""
Periodic job runner shared by the background workers.

Jobs run back to back with ``interval`` seconds between runs until the stop
event is set. A failed run is logged and counted; the loop keeps going.
"""
import asyncio
import signal
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.errors import OrderFlowError
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[int]]


async def run_periodically(name: str, job: Job, interval: float, stop: asyncio.Event) -> None:
    """
    Run ``job`` every ``interval`` seconds until ``stop`` is set.

    Args:
        name: Job name used in logs and metrics
        job: Coroutine function returning the number of items handled
        interval: Seconds between the end of one run and the start of the next
        stop: Event that ends the loop
    """
    logger.info("background_job_started", job=name, interval_seconds=interval)
    while not stop.is_set():
        try:
            await job()
        except (OrderFlowError, SQLAlchemyError) as e:
            metrics.record_background_job(name, "error")
            logger.error("background_job_failed", job=name, error=str(e))
        except Exception as e:
            metrics.record_background_job(name, "error")
            logger.exception("background_job_unexpected_error", job=name, error=str(e))

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("background_job_stopped", job=name)


def install_signal_handlers(stop: asyncio.Event, worker: str) -> None:
    """Set ``stop`` on SIGINT/SIGTERM so the current run can finish."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("worker_shutdown_signal_received", worker=worker, signal=sig)
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
