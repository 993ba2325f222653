"""
Payment gateway client for Stripe hosted checkout and refunds.

Implements:
- Error classification (transient / permanent / rate limit)
- Exponential backoff for retryable errors
- Circuit breaker around every API call
- Blocking SDK calls moved off the event loop
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from orderflow.config import Settings, get_settings
from orderflow.core.errors import GatewayError, GatewayErrorType
from orderflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout session as seen by the reconciler."""

    id: str
    url: Optional[str]
    payment_status: str
    amount_total: Optional[int] = None
    payment_intent_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    amount_cents: int


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops sending requests for ``timeout`` seconds after ``failure_threshold``
    consecutive failures, then lets trial calls through (half open).
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def before_call(self) -> None:
        """
        Raises:
            GatewayError: If the circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class StripeGateway:
    """
    Stripe wrapper used by the payment reconciler.

    All methods are coroutines returning plain dataclasses, so callers (and
    tests) never touch SDK objects.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backoff_multiplier: float = 1.0,
    ):
        """
        Initialize gateway client.

        Args:
            settings: Application settings (API key, version, redirect URLs)
            circuit_breaker: Breaker shared by all calls
            backoff_multiplier: Base of the exponential retry backoff in seconds
        """
        self.settings = settings or get_settings()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.backoff_multiplier = backoff_multiplier
        self._request_options: Dict[str, Any] = {
            "api_key": self.settings.stripe_secret_key,
            "stripe_version": self.settings.stripe_api_version,
        }

        logger.info(
            "stripe_gateway_initialized",
            api_version=self.settings.stripe_api_version,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run one blocking SDK call with breaker, retry and metrics.

        Raises:
            GatewayError: Classified failure after retries are exhausted
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.gateway_max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, min=0, max=16),
            reraise=True,
        ):
            with attempt:
                self.circuit_breaker.before_call()
                started = time.perf_counter()
                try:
                    loop = asyncio.get_running_loop()
                    result = await loop.run_in_executor(None, func)
                except stripe.StripeError as e:
                    self.circuit_breaker.on_failure()
                    error_type = self._classify_error(e)
                    metrics.record_gateway_call(
                        operation, "error", time.perf_counter() - started
                    )
                    logger.error(
                        "stripe_api_error",
                        operation=operation,
                        error_type=error_type.value,
                        error_code=getattr(e, "code", None),
                        error_message=str(e),
                    )
                    raise GatewayError(str(e), error_type, e) from e
                self.circuit_breaker.on_success()
                metrics.record_gateway_call(operation, "success", time.perf_counter() - started)
                return result
        raise GatewayError(f"{operation} did not run")

    @staticmethod
    def _to_session(session: Any) -> CheckoutSession:
        payment_intent = session.get("payment_intent")
        # expanded objects carry the id inside
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent["id"]
        return CheckoutSession(
            id=session["id"],
            url=session.get("url"),
            payment_status=session.get("payment_status") or "unpaid",
            amount_total=session.get("amount_total"),
            payment_intent_id=payment_intent,
            metadata=dict(session.get("metadata") or {}),
        )

    async def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session for a single order total.

        Args:
            amount_cents: Amount to collect
            currency: ISO currency code
            description: Line shown to the customer
            idempotency_key: Key that makes retries return the same session
            metadata: Copied onto the session and its payment intent
            customer_email: Optional prefilled email

        Returns:
            CheckoutSession: Created session with its redirect URL

        Raises:
            GatewayError: If session creation fails
        """
        logger.info(
            "creating_checkout_session",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": self.settings.checkout_success_url,
            "cancel_url": self.settings.checkout_cancel_url,
            "metadata": metadata or {},
            "payment_intent_data": {"metadata": metadata or {}},
        }
        if customer_email:
            params["customer_email"] = customer_email

        def _create() -> Any:
            return stripe.checkout.Session.create(
                idempotency_key=idempotency_key, **params, **self._request_options
            )

        session = self._to_session(await self._call("create_checkout_session", _create))
        logger.info("checkout_session_created", session_id=session.id)
        return session

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """
        Fetch a checkout session to learn whether it was paid.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("retrieving_checkout_session", session_id=session_id)

        def _retrieve() -> Any:
            return stripe.checkout.Session.retrieve(session_id, **self._request_options)

        return self._to_session(await self._call("retrieve_checkout_session", _retrieve))

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Gateway payment intent id
            amount_cents: Partial refund amount (full refund when None)
            reason: Optional refund reason
            idempotency_key: Optional idempotency key

        Returns:
            RefundResult: Created refund

        Raises:
            GatewayError: If refund creation fails
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
        )

        def _create_refund() -> Any:
            kwargs: Dict[str, Any] = {"payment_intent": payment_intent_id}
            if amount_cents:
                kwargs["amount"] = amount_cents
            if reason:
                kwargs["reason"] = reason
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Refund.create(**kwargs, **self._request_options)

        refund = await self._call("create_refund", _create_refund)
        result = RefundResult(id=refund["id"], status=refund["status"], amount_cents=refund["amount"])
        logger.info("refund_created", refund_id=result.id, status=result.status)
        return result
