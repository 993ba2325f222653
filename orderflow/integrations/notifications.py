"""
Notification dispatcher.

A bounded ``asyncio.Queue`` drained by a fixed pool of worker tasks:

- ``submit`` never blocks the caller; when the queue is full the notification
  is dropped and counted
- each delivery is retried with exponential backoff (tenacity)
- delivery failures are logged and never reach the order/payment workflow
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from orderflow.database.models import Order
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    """Snapshot of what a customer should hear about."""

    kind: str
    order_id: uuid.UUID
    user_id: uuid.UUID
    order_number: str
    data: Dict[str, Any] = field(default_factory=dict)


Notifier = Callable[[Notification], Awaitable[None]]


async def log_notifier(notification: Notification) -> None:
    """Default delivery channel: write the notification to the log."""
    logger.info(
        "notification_sent",
        kind=notification.kind,
        order_id=str(notification.order_id),
        order_number=notification.order_number,
        user_id=str(notification.user_id),
        **notification.data,
    )


class NotificationDispatcher:
    """Fire-and-forget notification queue with a worker pool."""

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        queue_size: int = 1000,
        workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        """
        Initialize dispatcher.

        Args:
            notifier: Async delivery callable (defaults to logging)
            queue_size: Maximum queued notifications before dropping
            workers: Number of worker tasks
            max_attempts: Delivery attempts per notification
            backoff_seconds: Base of the exponential retry backoff
        """
        self.notifier = notifier or log_notifier
        self.workers = workers
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=queue_size)
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"notification-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info("notification_dispatcher_started", workers=self.workers)

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """
        Stop the workers, giving queued notifications a chance to go out.

        Args:
            drain_timeout: Seconds to wait for the queue to empty
        """
        if self.is_running and drain_timeout > 0:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("notification_drain_timeout", pending=self.queue.qsize())

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("notification_dispatcher_stopped")

    async def drain(self) -> None:
        """Wait until every queued notification was handled."""
        await self.queue.join()

    def submit(self, notification: Notification) -> bool:
        """
        Queue a notification without waiting.

        Returns:
            bool: False if the queue was full and the notification was dropped
        """
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            metrics.record_notification(notification.kind, "dropped")
            logger.warning(
                "notification_dropped",
                kind=notification.kind,
                order_id=str(notification.order_id),
            )
            return False
        metrics.set_notification_queue_depth(self.queue.qsize())
        return True

    async def _worker(self, index: int) -> None:
        while True:
            notification = await self.queue.get()
            try:
                await self._deliver(notification)
            finally:
                self.queue.task_done()
                metrics.set_notification_queue_depth(self.queue.qsize())

    async def _deliver(self, notification: Notification) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
                reraise=True,
            ):
                with attempt:
                    await self.notifier(notification)
        except Exception as e:
            metrics.record_notification(notification.kind, "failed")
            logger.error(
                "notification_delivery_failed",
                kind=notification.kind,
                order_id=str(notification.order_id),
                attempts=self.max_attempts,
                error=str(e),
            )
            return
        metrics.record_notification(notification.kind, "delivered")

    def _submit_for(self, kind: str, order: Order, **data: Any) -> bool:
        return self.submit(
            Notification(
                kind=kind,
                order_id=order.id,
                user_id=order.user_id,
                order_number=order.order_number,
                data=data,
            )
        )

    def notify_order_created(self, order: Order) -> bool:
        return self._submit_for("order_created", order, total_cents=order.total_cents)

    def notify_order_status_changed(self, order: Order, old_status: str) -> bool:
        return self._submit_for(
            "order_status_changed", order, old_status=old_status, new_status=order.status
        )

    def notify_payment_received(self, order: Order, amount_cents: int) -> bool:
        return self._submit_for("payment_received", order, amount_cents=amount_cents)

    def notify_order_cancelled(self, order: Order, reason: Optional[str]) -> bool:
        return self._submit_for("order_cancelled", order, reason=reason)

    def notify_order_shipped(self, order: Order) -> bool:
        return self._submit_for(
            "order_shipped",
            order,
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            tracking_url=order.tracking_url,
        )

    def notify_order_delivered(self, order: Order) -> bool:
        return self._submit_for("order_delivered", order)

    def notify_refund_issued(self, order: Order, amount_cents: int) -> bool:
        return self._submit_for("refund_issued", order, amount_cents=amount_cents)
