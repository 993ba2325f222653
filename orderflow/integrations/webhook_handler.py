"""
Gateway webhook intake: signature verification, replay cache and routing.

Implements:
- Stripe v1 signature verification with a timestamp tolerance
- Event routing to registered async handlers
- Optional Redis replay cache keyed on the gateway event id

The Redis tier only short-circuits obvious replays. Correctness never depends
on it: every handler is idempotent on the payment's gateway ids, so a Redis
outage just means duplicates reach the database check.
"""
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from redis.exceptions import RedisError

from orderflow.config import Settings, get_settings
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUPPORTED_PROVIDERS = frozenset({"stripe"})


class WebhookError(Exception):
    """Raised when a webhook payload cannot be accepted."""

    code = "webhook_error"


class WebhookSignatureError(WebhookError):
    """Raised when the signature header is missing or does not verify."""

    code = "invalid_signature"


@dataclass(frozen=True)
class GatewayEvent:
    """Verified gateway event with its ``data.object`` as a plain dict."""

    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None


EventHandler = Callable[[GatewayEvent], Awaitable[Dict[str, Any]]]


class WebhookHandler:
    """
    Verifies and routes gateway webhook events.

    Handlers are registered per event type by the payment reconciler; unknown
    types are acknowledged so the gateway does not keep retrying them.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings (webhook secret, tolerance, TTL)
            redis_client: Optional Redis client for the replay cache
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.event_handlers: Dict[str, EventHandler] = {}

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Gateway event type (e.g. 'checkout.session.completed')
            handler: Async callable receiving the verified event
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(
        self, provider: str, payload: bytes, signature: Optional[str]
    ) -> GatewayEvent:
        """
        Verify webhook signature and parse the event.

        Args:
            provider: Gateway name from the URL
            payload: Raw request body as bytes
            signature: Provider signature header value

        Returns:
            GatewayEvent: Verified event

        Raises:
            WebhookSignatureError: If the signature is missing or invalid
            WebhookError: If the provider is unknown or the payload is malformed
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise WebhookError(f"Unsupported webhook provider: {provider}")
        if not signature:
            metrics.record_webhook_signature_failure(provider)
            raise WebhookSignatureError("Missing webhook signature")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.webhook_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            metrics.record_webhook_signature_failure(provider)
            logger.warning("webhook_signature_verification_failed", provider=provider, error=str(e))
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e

        try:
            raw = json.loads(body)
            event = GatewayEvent(
                id=raw["id"],
                type=raw["type"],
                data=raw.get("data", {}).get("object") or {},
                created=raw.get("created"),
            )
        except (ValueError, KeyError, AttributeError, TypeError) as e:
            logger.warning("webhook_payload_malformed", provider=provider, error=str(e))
            raise WebhookError(f"Malformed webhook payload: {e}") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    @staticmethod
    def _key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check the replay cache for an event id.

        Returns:
            bool: True if the event was already handled; False when unknown or
            when the cache is unavailable
        """
        if self.redis_client is None:
            return False
        try:
            return bool(await self.redis_client.exists(self._key(event_id)))
        except RedisError as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """Remember an event id for ``webhook_dedup_ttl_seconds``."""
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self._key(event_id), self.settings.webhook_dedup_ttl_seconds, "1"
            )
        except RedisError as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Args:
            event: Verified gateway event

        Returns:
            Dict[str, Any]: Processing result with a ``status`` of
            ``duplicate``, ``ignored`` or ``success``

        Raises:
            Exception: Whatever the handler raised; the event is not marked
            processed so the gateway's retry gets another chance
        """
        started = time.perf_counter()
        logger.info("processing_webhook_event", event_id=event.id, event_type=event.type)

        if await self.is_event_processed(event.id):
            logger.info("webhook_event_already_processed", event_id=event.id, event_type=event.type)
            metrics.record_webhook_event(event.type, "duplicate", time.perf_counter() - started)
            return {"status": "duplicate", "event_id": event.id}

        handler = self.event_handlers.get(event.type)
        if handler is None:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            metrics.record_webhook_event(event.type, "ignored", time.perf_counter() - started)
            return {"status": "ignored", "event_id": event.id, "event_type": event.type}

        try:
            result = await handler(event)
        except Exception as e:
            metrics.record_webhook_event(event.type, "error", time.perf_counter() - started)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
            )
            raise

        await self.mark_event_processed(event.id)
        metrics.record_webhook_event(event.type, "success", time.perf_counter() - started)
        logger.info("webhook_event_processed_successfully", event_id=event.id, event_type=event.type)
        return {"status": "success", "event_id": event.id, "event_type": event.type, "result": result}

    async def close(self) -> None:
        """Close the Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
