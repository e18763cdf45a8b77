"""
Payment reconciliation.

Two completion channels report the same payment:
- the client's direct confirm call (``confirm_payment``)
- the gateway's signed webhook (``handle_webhook_event``)

Both are delivered at least once, in any order, possibly concurrently. Both
funnel into ``apply``, which is idempotent on the gateway intent id and
persists through the store's versioned save. On a version conflict the whole
load-check-write sequence is retried; the loser of a race reloads, sees the
winner's committed payment and resolves to a no-op.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from marketplace.core.order_store import OrderStore
from marketplace.core.retry import conflict_retrying
from marketplace.core.state_machine import OrderStateMachine
from marketplace.domain import (
    Actor,
    AmountMismatchError,
    ConflictError,
    DoublePaymentDetectedError,
    InvalidTransitionError,
    Order,
    OrderError,
    OrderStatus,
    PaymentNotSuccessfulError,
    PaymentReference,
    SignatureInvalidError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
)
from marketplace.domain.order import utcnow
from marketplace.integrations.gateway import (
    INTENT_SUCCEEDED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    GatewayEvent,
    IntentStatus,
    PaymentGatewayClient,
)
from marketplace.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CHANNEL_CONFIRM = "confirm"
CHANNEL_WEBHOOK = "webhook"


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of ``apply``: the order as stored and whether this call wrote it."""

    order: Order
    applied: bool


class WebhookStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    PAYMENT_FAILED = "payment_failed"
    IGNORED = "ignored"
    CANCELLED_ORDER = "payment_for_cancelled_order"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: WebhookStatus


class PaymentReconciler:
    """
    Merges confirm-call and webhook payment signals into one paid state.

    Configuration (webhook secret, timeouts, retry bounds) is passed in at
    construction; nothing here reads process-wide settings.
    """

    def __init__(
        self,
        store: OrderStore,
        gateway: PaymentGatewayClient,
        state_machine: OrderStateMachine,
        webhook_secret: str,
        gateway_timeout: float = 10.0,
        max_attempts: int = 3,
        retry_jitter: float = 0.05,
    ):
        self.store = store
        self.gateway = gateway
        self.state_machine = state_machine
        self.webhook_secret = webhook_secret
        self.gateway_timeout = gateway_timeout
        self.max_attempts = max_attempts
        self.retry_jitter = retry_jitter

    async def confirm_payment(
        self,
        order_id: str,
        payment_intent_id: str,
        requesting_user_id: str,
        payer_email: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Confirm a payment reported by the paying client.

        Ownership is checked before the gateway is contacted, and the order
        is only written after the gateway confirms the intent succeeded.

        Raises:
            NotFoundError: If the order does not exist
            UnauthorizedError: If the caller does not own the order
            PaymentNotSuccessfulError: If the intent has not succeeded
            ValidationError: If the intent belongs to another order
            AmountMismatchError: If the intent charged a different amount
            GatewayUnavailableError: If the gateway times out
            DoublePaymentDetectedError: If a different intent is already bound
            ConflictError: If concurrent writers exhaust the retries
        """
        order = await self.store.find_by_id(order_id)

        if not order.is_owned_by(requesting_user_id):
            logger.warning(
                "confirm_payment_unauthorized",
                order_id=order.id,
                requesting_user_id=requesting_user_id,
            )
            raise UnauthorizedError("Not authorized to confirm this order", order_id=order.id)

        intent = await self.gateway.retrieve_intent(
            payment_intent_id, timeout=self.gateway_timeout
        )

        if not intent.succeeded:
            logger.info(
                "payment_not_successful",
                order_id=order.id,
                payment_intent_id=payment_intent_id,
                gateway_status=intent.status,
            )
            metrics.record_reconciliation(CHANNEL_CONFIRM, "not_successful")
            raise PaymentNotSuccessfulError(
                f"Payment {payment_intent_id} has status {intent.status}",
                order_id=order.id,
            )

        bound_order_id = intent.metadata.get("order_id")
        if bound_order_id and bound_order_id != order.id:
            logger.warning(
                "payment_intent_for_other_order",
                order_id=order.id,
                payment_intent_id=payment_intent_id,
                intent_order_id=bound_order_id,
            )
            raise ValidationError(
                f"Payment {payment_intent_id} does not belong to order {order.id}",
                order_id=order.id,
            )

        if intent.amount is not None:
            self._check_amount(order, intent, CHANNEL_CONFIRM)

        try:
            return await self.apply(
                order,
                payment_intent_id,
                intent.status,
                payer_email or intent.payer_email,
                channel=CHANNEL_CONFIRM,
            )
        except InvalidTransitionError:
            await self._report_if_cancelled(order.id, payment_intent_id, CHANNEL_CONFIRM)
            raise

    async def handle_webhook_event(
        self, raw_payload: bytes, signature_header: Optional[str]
    ) -> WebhookOutcome:
        """
        Process a gateway webhook delivery.

        Args:
            raw_payload: Raw request body (must not be re-serialized)
            signature_header: Signature header sent by the gateway

        Returns:
            WebhookOutcome: What happened to the event
            (a success for a cancelled order is acknowledged as
            ``CANCELLED_ORDER`` and flagged for manual review)

        Raises:
            SignatureInvalidError: If the signature does not verify (nothing is touched)
            AmountMismatchError: If the charged amount differs from the order total
        """
        start_time = time.time()

        try:
            event = await self.gateway.verify_webhook_signature(
                raw_payload,
                signature_header,
                self.webhook_secret,
                timeout=self.gateway_timeout,
            )
        except SignatureInvalidError as e:
            metrics.record_webhook_rejection("invalid_signature")
            logger.warning("webhook_rejected_invalid_signature", error=str(e))
            raise

        logger.info(
            "webhook_received",
            event_id=event.event_id,
            event_type=event.event_type,
            order_id=event.order_id,
        )

        try:
            if event.event_type == PAYMENT_SUCCEEDED:
                status = await self._handle_payment_succeeded(event)
            elif event.event_type == PAYMENT_FAILED:
                status = self._handle_payment_failed(event)
            else:
                logger.info(
                    "unhandled_webhook_event_type",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                status = WebhookStatus.IGNORED
        except OrderError as e:
            metrics.record_webhook_event(event.event_type, e.code, time.time() - start_time)
            raise

        metrics.record_webhook_event(event.event_type, status.value, time.time() - start_time)
        return WebhookOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            status=status,
        )

    async def _handle_payment_succeeded(self, event: GatewayEvent) -> WebhookStatus:
        intent = event.intent
        order_id = event.order_id
        if intent is None or not order_id:
            logger.warning(
                "webhook_event_without_order",
                event_id=event.event_id,
                payment_intent_id=intent.intent_id if intent else None,
            )
            return WebhookStatus.IGNORED

        order = await self.store.find_by_id(order_id)

        # The frozen total is the only source of the expected amount
        self._check_amount(order, intent, CHANNEL_WEBHOOK)

        try:
            result = await self.apply(
                order,
                intent.intent_id,
                intent.status or INTENT_SUCCEEDED,
                intent.payer_email,
                channel=CHANNEL_WEBHOOK,
            )
        except InvalidTransitionError:
            # Acknowledged so the gateway stops redelivering; flagged for review
            if await self._report_if_cancelled(order.id, intent.intent_id, CHANNEL_WEBHOOK):
                return WebhookStatus.CANCELLED_ORDER
            raise
        return WebhookStatus.APPLIED if result.applied else WebhookStatus.DUPLICATE

    async def _report_if_cancelled(self, order_id: str, intent_id: str, channel: str) -> bool:
        """Flag a succeeded payment that arrived for a cancelled order."""
        order = await self.store.find_by_id(order_id)
        if order.status != OrderStatus.CANCELLED:
            return False

        metrics.record_payment_for_cancelled_order(channel)
        metrics.record_reconciliation(channel, "cancelled_order")
        if channel == CHANNEL_WEBHOOK:
            metrics.record_webhook_rejection("cancelled_order")
        logger.error(
            "payment_for_cancelled_order",
            order_id=order.id,
            payment_intent_id=intent_id,
            owner_id=order.owner_id,
            amount=order.total_minor_units,
            currency=order.currency,
            channel=channel,
        )
        return True

    def _handle_payment_failed(self, event: GatewayEvent) -> WebhookStatus:
        intent_obj = (event.raw.get("data") or {}).get("object") or {}
        last_error = intent_obj.get("last_payment_error") or {}

        metrics.record_payment_failure()
        logger.warning(
            "payment_failed",
            event_id=event.event_id,
            order_id=event.order_id,
            payment_intent_id=event.intent.intent_id if event.intent else None,
            failure_code=last_error.get("code"),
            failure_message=last_error.get("message"),
        )
        return WebhookStatus.PAYMENT_FAILED

    def _check_amount(self, order: Order, intent: IntentStatus, channel: str) -> None:
        expected = order.total_minor_units
        currency_ok = intent.currency is None or intent.currency.lower() == order.currency
        if intent.amount == expected and currency_ok:
            return

        metrics.record_reconciliation(channel, "amount_mismatch")
        if channel == CHANNEL_WEBHOOK:
            metrics.record_webhook_rejection("amount_mismatch")
        logger.error(
            "payment_amount_mismatch",
            order_id=order.id,
            payment_intent_id=intent.intent_id,
            expected_amount=expected,
            expected_currency=order.currency,
            reported_amount=intent.amount,
            reported_currency=intent.currency,
            channel=channel,
        )
        raise AmountMismatchError(
            f"Payment {intent.intent_id} amount {intent.amount} {intent.currency} "
            f"does not match order total {expected} {order.currency}",
            order_id=order.id,
        )

    async def apply(
        self,
        order: Order,
        intent_id: str,
        gateway_status: str,
        payer_email: Optional[str],
        channel: str = "direct",
    ) -> ReconciliationResult:
        """
        Idempotently record ``intent_id`` as the payment for ``order``.

        - Same intent already bound and order paid or later: no-op success.
        - Different intent already bound: ``DoublePaymentDetectedError``.
        - Otherwise: bind the payment, move to Paid, versioned save.

        Version conflicts reload the order and retry the whole sequence;
        exhausting the attempts raises ``ConflictError``.
        """
        reload = False

        async def attempt() -> ReconciliationResult:
            nonlocal reload
            current = await self.store.find_by_id(order.id) if reload else order
            reload = True
            return await self._apply_once(current, intent_id, gateway_status, payer_email)

        try:
            result = await conflict_retrying(self.max_attempts, self.retry_jitter)(attempt)
        except VersionConflictError as e:
            metrics.record_reconciliation(channel, "conflict")
            logger.error(
                "payment_apply_conflict_exhausted",
                order_id=order.id,
                payment_intent_id=intent_id,
                attempts=self.max_attempts,
            )
            raise ConflictError(
                f"Order {order.id} was modified concurrently; retries exhausted",
                order_id=order.id,
            ) from e
        except DoublePaymentDetectedError:
            metrics.record_reconciliation(channel, "double_payment")
            raise

        metrics.record_reconciliation(channel, "applied" if result.applied else "duplicate")
        return result

    async def _apply_once(
        self,
        order: Order,
        intent_id: str,
        gateway_status: str,
        payer_email: Optional[str],
    ) -> ReconciliationResult:
        bound = order.payment_reference

        if bound is not None and bound.gateway_intent_id == intent_id and order.is_paid:
            logger.info(
                "payment_already_applied",
                order_id=order.id,
                payment_intent_id=intent_id,
                status=order.status.value,
            )
            return ReconciliationResult(order=order, applied=False)

        if bound is not None and bound.gateway_intent_id != intent_id:
            metrics.record_double_payment()
            logger.error(
                "double_payment_detected",
                order_id=order.id,
                bound_payment_intent_id=bound.gateway_intent_id,
                incoming_payment_intent_id=intent_id,
            )
            raise DoublePaymentDetectedError(
                f"Order {order.id} is already paid with {bound.gateway_intent_id}; "
                f"refusing {intent_id}",
                order_id=order.id,
                bound_intent_id=bound.gateway_intent_id,
                incoming_intent_id=intent_id,
            )

        settled_at = utcnow()
        reference = PaymentReference(
            gateway_intent_id=intent_id,
            gateway_status=gateway_status,
            payer_email=payer_email,
            settled_at=settled_at,
        )
        paid = self.state_machine.transition(
            order,
            OrderStatus.PAID,
            Actor.system(),
            payment_reference=reference,
            now=settled_at,
        )

        try:
            saved = await self.store.save_with_version(paid)
        except VersionConflictError as e:
            metrics.record_version_conflict()
            logger.warning(
                "payment_apply_version_conflict",
                order_id=order.id,
                payment_intent_id=intent_id,
                expected_version=e.expected_version,
                current_version=e.current_version,
            )
            raise
        except DoublePaymentDetectedError:
            metrics.record_double_payment()
            raise

        metrics.record_transition(order.status.value, OrderStatus.PAID.value)
        logger.info(
            "payment_applied",
            order_id=saved.id,
            payment_intent_id=intent_id,
            version=saved.version,
        )
        return ReconciliationResult(order=saved, applied=True)
