"""
Service wiring.

Builds the object graph shared by the API process and the background workers.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from orderflow.config import Settings, get_settings
from orderflow.core.event_log import OrderEventLog
from orderflow.core.inventory import InventoryLedger
from orderflow.core.order_numbers import OrderNumberGenerator
from orderflow.core.orders import OrderOrchestrator
from orderflow.core.payments import PaymentReconciler
from orderflow.core.reservations import StockReservationManager
from orderflow.database.connection import close_db, get_engine, get_session_factory
from orderflow.integrations.notifications import NotificationDispatcher, Notifier
from orderflow.integrations.stripe_gateway import StripeGateway
from orderflow.integrations.webhook_handler import WebhookHandler
from orderflow.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler or worker needs, built once per process."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    reservations: StockReservationManager
    event_log: OrderEventLog
    notifier: NotificationDispatcher
    orders: OrderOrchestrator
    payments: PaymentReconciler
    gateway: StripeGateway
    webhook_handler: WebhookHandler
    health: HealthCheck
    redis_client: Optional[aioredis.Redis] = None
    engine: Optional[AsyncEngine] = None

    async def start(self) -> None:
        self.notifier.start()
        logger.info("services_started", redis_enabled=self.redis_client is not None)

    async def stop(self) -> None:
        """Drain notifications and close connections this container owns."""
        await self.notifier.stop()
        await self.webhook_handler.close()
        if self.engine is not None:
            await close_db()
        logger.info("services_stopped")


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[StripeGateway] = None,
    redis_client: Optional[aioredis.Redis] = None,
    notifier: Optional[Notifier] = None,
) -> ServiceContainer:
    """
    Wire the services.

    Args:
        settings: Application settings (loaded from the environment when None)
        session_factory: Session factory; the process-wide one when None
        gateway: Payment gateway client; a Stripe client when None
        redis_client: Replay cache client; built from ``redis_url`` when None
        notifier: Notification delivery callable (logs when None)

    Returns:
        ServiceContainer: Wired, not yet started, services
    """
    settings = settings or get_settings()
    engine = None
    if session_factory is None:
        engine = get_engine(settings)
        session_factory = get_session_factory(settings)
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

    reservations = StockReservationManager(
        InventoryLedger(), default_ttl_minutes=settings.reservation_ttl_minutes
    )
    event_log = OrderEventLog()
    dispatcher = NotificationDispatcher(
        notifier,
        queue_size=settings.notification_queue_size,
        workers=settings.notification_workers,
        max_attempts=settings.notification_max_attempts,
    )
    gateway = gateway or StripeGateway(settings)
    webhook_handler = WebhookHandler(settings, redis_client)

    orders = OrderOrchestrator(
        session_factory,
        settings,
        reservations,
        event_log,
        dispatcher,
        OrderNumberGenerator(
            max_attempts=settings.order_number_max_attempts,
            retry_delay_seconds=settings.order_number_retry_delay_seconds,
        ),
    )
    payments = PaymentReconciler(
        session_factory,
        settings,
        gateway,
        webhook_handler,
        reservations,
        event_log,
        dispatcher,
    )

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        reservations=reservations,
        event_log=event_log,
        notifier=dispatcher,
        orders=orders,
        payments=payments,
        gateway=gateway,
        webhook_handler=webhook_handler,
        health=HealthCheck(session_factory, redis_client, dispatcher),
        redis_client=redis_client,
        engine=engine,
    )
