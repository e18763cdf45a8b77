"""
Payment gateway port.

The reconciler only talks to this protocol; provider specifics (Stripe SDK
objects, error classes, signature schemes) stay inside the implementation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

INTENT_SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class CreatedIntent:
    """Result of creating a payment intent."""

    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class IntentStatus:
    """Gateway-side view of a payment intent."""

    intent_id: str
    status: Optional[str]
    created_at: Optional[datetime] = None
    amount: Optional[int] = None  # minor units
    currency: Optional[str] = None
    payer_email: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED


@dataclass(frozen=True)
class GatewayEvent:
    """
    A verified webhook event.

    ``intent`` is populated for payment intent events; other event types carry
    only their id and type.
    """

    event_id: str
    event_type: str
    intent: Optional[IntentStatus] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        if self.intent is None:
            return None
        return self.intent.metadata.get("order_id")


class PaymentGatewayClient(Protocol):
    """
    Port describing payment gateway operations used by the core.

    Every call is bounded by ``timeout`` seconds; implementations raise
    ``GatewayUnavailableError`` on timeout or transient provider failure.
    """

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CreatedIntent:
        """Create a payment intent for ``amount`` (major units)."""
        ...

    async def retrieve_intent(
        self, intent_id: str, timeout: Optional[float] = None
    ) -> IntentStatus:
        """Fetch the current gateway status of an intent."""
        ...

    async def verify_webhook_signature(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        secret: str,
        timeout: Optional[float] = None,
    ) -> GatewayEvent:
        """Verify a webhook delivery and parse it, or raise ``SignatureInvalidError``."""
        ...
