"""
Stripe implementation of the payment gateway port.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent payment intent creation
- Webhook signature verification
- Caller-supplied timeouts on every call

The Stripe SDK is synchronous, so each call runs in a worker thread and is
awaited under ``asyncio.wait_for``. Configuration is passed in explicitly;
nothing here touches the process-wide ``stripe.api_key``.
"""
import asyncio
import json
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketplace.domain import (
    GatewayUnavailableError,
    PaymentNotSuccessfulError,
    SignatureInvalidError,
    ValidationError,
    to_minor_units,
)
from marketplace.integrations.gateway import CreatedIntent, GatewayEvent, IntentStatus
from marketplace.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_WEBHOOK_TOLERANCE = 300  # seconds


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Classified Stripe failure. Internal to this module."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != StripeErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Calls run on worker threads, so state
    changes happen under a lock.
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
        self._lock = threading.Lock()

    def before_call(self) -> None:
        """
        Check the breaker before a protected call.

        Raises:
            StripeError: If circuit is open
        """
        with self._lock:
            if self.state != "open":
                return
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
                return
        raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = "closed"
                    logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold and self.state != "open":
                self.state = "open"
                logger.warning(
                    "circuit_breaker_opened",
                    failure_count=self.failure_count,
                )


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Best-effort conversion of a Stripe object (or plain mapping) to a dict."""
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return {}


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _intent_from_payload(obj: Mapping[str, Any]) -> IntentStatus:
    """Build an IntentStatus from a payment intent JSON object."""
    metadata = obj.get("metadata") or {}
    return IntentStatus(
        intent_id=str(obj["id"]),
        status=obj.get("status"),
        created_at=_timestamp(obj.get("created")),
        amount=obj.get("amount"),
        currency=obj.get("currency"),
        payer_email=obj.get("receipt_email"),
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


def _intent_from_object(intent: Any) -> IntentStatus:
    """Build an IntentStatus from a Stripe SDK PaymentIntent."""
    metadata = _as_dict(getattr(intent, "metadata", None))
    return IntentStatus(
        intent_id=str(intent.id),
        status=str(intent.status),
        created_at=_timestamp(getattr(intent, "created", None)),
        amount=getattr(intent, "amount", None),
        currency=getattr(intent, "currency", None),
        payer_email=getattr(intent, "receipt_email", None),
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


class StripeGatewayClient:
    """
    Stripe-backed ``PaymentGatewayClient``.

    Features:
    - Automatic retry with exponential backoff (transient and rate-limit errors)
    - Circuit breaker pattern
    - Idempotent payment intent creation
    - Comprehensive error classification
    """

    def __init__(
        self,
        secret_key: str,
        api_version: Optional[str] = None,
        default_timeout: float = 10.0,
        max_attempts: int = 3,
        webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
        client: Optional[Any] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Stripe gateway client.

        Args:
            secret_key: Stripe secret API key
            api_version: Optional pinned Stripe API version
            default_timeout: Timeout used when the caller does not pass one
            max_attempts: Attempts for transient failures
            webhook_tolerance: Max age of a signed webhook (seconds)
            client: Optional preconfigured ``stripe.StripeClient``
            circuit_breaker: Optional circuit breaker
        """
        self.client = client or stripe.StripeClient(secret_key, stripe_version=api_version)
        self.default_timeout = default_timeout
        self.max_attempts = max_attempts
        self.webhook_tolerance = webhook_tolerance
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    @staticmethod
    def _classify_error(error: Exception) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _guarded(self, func: Callable[[], T]) -> T:
        """Run ``func`` behind the circuit breaker, classifying SDK errors."""
        self.circuit_breaker.before_call()
        try:
            result = func()
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            if error_type != StripeErrorType.PERMANENT:
                self.circuit_breaker.on_failure()

            logger.error(
                "stripe_api_error",
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            metrics.record_gateway_error(error_type.value)
            raise StripeError(str(e), error_type, original_error=e) from e

        self.circuit_breaker.on_success()
        return result

    async def _call(
        self, operation: str, func: Callable[[], T], timeout: Optional[float]
    ) -> T:
        """
        Execute a blocking SDK call with retries, bounded by ``timeout``.

        Raises:
            GatewayUnavailableError: On timeout or exhausted transient errors
            StripeError: For permanent errors (callers map these)
        """
        budget = timeout if timeout is not None else self.default_timeout
        start_time = time.time()

        async def _attempts() -> T:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(
                    lambda e: isinstance(e, StripeError) and e.retryable
                ),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.25, min=0.25, max=4),
                reraise=True,
            ):
                with attempt:
                    return await asyncio.to_thread(self._guarded, func)
            raise AssertionError("unreachable")  # pragma: no cover

        try:
            result = await asyncio.wait_for(_attempts(), timeout=budget)
        except asyncio.TimeoutError as e:
            metrics.record_gateway_error("timeout")
            metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
            logger.warning("gateway_call_timed_out", operation=operation, timeout=budget)
            raise GatewayUnavailableError(
                f"Payment gateway {operation} timed out after {budget}s"
            ) from e
        except StripeError as e:
            metrics.record_gateway_call(operation, e.error_type.value, time.time() - start_time)
            if e.retryable:
                raise GatewayUnavailableError(
                    f"Payment gateway {operation} failed: {str(e)}"
                ) from e
            raise

        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return result

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CreatedIntent:
        """
        Create a Stripe PaymentIntent.

        Args:
            amount: Amount in major units; charged as integer cents
            currency: Currency code (e.g., 'usd')
            metadata: Metadata echoed back on webhooks (must carry order_id)
            idempotency_key: Idempotency key for preventing duplicate intents
            timeout: Upper bound for the whole call (seconds)

        Raises:
            GatewayUnavailableError: If Stripe is unreachable or times out
            ValidationError: If Stripe rejects the request
        """
        amount_cents = to_minor_units(amount)
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            options: Dict[str, Any] = {}
            if idempotency_key:
                options["idempotency_key"] = idempotency_key
            return self.client.payment_intents.create(
                params={
                    "amount": amount_cents,
                    "currency": currency.lower(),
                    "metadata": dict(metadata),
                    "automatic_payment_methods": {"enabled": True},
                },
                options=options,
            )

        try:
            intent = await self._call("create_intent", _create, timeout)
        except StripeError as e:
            raise ValidationError(f"Payment intent rejected: {str(e)}") from e

        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return CreatedIntent(intent_id=str(intent.id), client_secret=str(intent.client_secret))

    async def retrieve_intent(
        self, intent_id: str, timeout: Optional[float] = None
    ) -> IntentStatus:
        """
        Retrieve a PaymentIntent by ID.

        Raises:
            GatewayUnavailableError: If Stripe is unreachable or times out
            PaymentNotSuccessfulError: If Stripe does not know the intent
        """
        logger.info("retrieving_payment_intent", payment_intent_id=intent_id)

        def _retrieve() -> Any:
            return self.client.payment_intents.retrieve(intent_id)

        try:
            intent = await self._call("retrieve_intent", _retrieve, timeout)
        except StripeError as e:
            raise PaymentNotSuccessfulError(
                f"Payment intent {intent_id} could not be verified: {str(e)}"
            ) from e

        return _intent_from_object(intent)

    async def verify_webhook_signature(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: str,
        timeout: Optional[float] = None,
    ) -> GatewayEvent:
        """
        Verify webhook signature and parse the event.

        Args:
            raw_payload: Raw request body as bytes
            signature_header: Stripe-Signature header value
            secret: Webhook signing secret
            timeout: Upper bound for verification (seconds)

        Raises:
            SignatureInvalidError: If signature verification fails
        """
        if not signature_header:
            metrics.record_gateway_call("verify_webhook", "invalid", 0.0)
            raise SignatureInvalidError("Missing webhook signature header")

        budget = timeout if timeout is not None else self.default_timeout
        start_time = time.time()

        def _verify() -> Dict[str, Any]:
            payload = (
                raw_payload.decode("utf-8")
                if isinstance(raw_payload, (bytes, bytearray))
                else raw_payload
            )
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, self.webhook_tolerance
            )
            return json.loads(payload)

        try:
            data = await asyncio.wait_for(asyncio.to_thread(_verify), timeout=budget)
        except stripe.SignatureVerificationError as e:
            metrics.record_gateway_call("verify_webhook", "invalid", time.time() - start_time)
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise SignatureInvalidError(f"Invalid webhook signature: {str(e)}") from e
        except ValueError as e:
            metrics.record_gateway_call("verify_webhook", "invalid", time.time() - start_time)
            logger.error("webhook_payload_invalid", error=str(e))
            raise SignatureInvalidError(f"Invalid webhook payload: {str(e)}") from e
        except asyncio.TimeoutError as e:
            metrics.record_gateway_call("verify_webhook", "timeout", time.time() - start_time)
            raise GatewayUnavailableError(
                f"Webhook verification timed out after {budget}s"
            ) from e

        metrics.record_gateway_call("verify_webhook", "success", time.time() - start_time)
        event = self.parse_event(data)
        logger.info(
            "webhook_signature_verified",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return event

    @staticmethod
    def parse_event(data: Mapping[str, Any]) -> GatewayEvent:
        """Turn a verified Stripe event payload into a ``GatewayEvent``."""
        event_type = str(data.get("type", ""))
        obj = (data.get("data") or {}).get("object") or {}

        intent = None
        is_intent = obj.get("object", "payment_intent") == "payment_intent"
        # An intent without an id cannot be matched to an order
        if event_type.startswith("payment_intent.") and is_intent and obj.get("id"):
            intent = _intent_from_payload(obj)

        return GatewayEvent(
            event_id=str(data.get("id", "")),
            event_type=event_type,
            intent=intent,
            raw=dict(data),
        )
