"""
Error taxonomy for the order/payment core.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer renders it with. Validation and authorization errors are raised
before any mutation; ``VersionConflictError`` is internal to the store and the
reconciler and is never returned to callers.
"""
from typing import Optional


class OrderError(Exception):
    """Base exception for order and payment processing errors."""

    code = "order_error"
    status_code = 500

    def __init__(self, message: str, order_id: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message)


class NotFoundError(OrderError):
    """Raised when an order (or other record) does not exist."""

    code = "not_found"
    status_code = 404


class UnauthorizedError(OrderError):
    """Raised when the caller is not the order owner or lacks the required role."""

    code = "unauthorized"
    status_code = 401


class ValidationError(OrderError):
    """Raised when order items or quantities are malformed."""

    code = "validation_error"
    status_code = 400


class InvalidItemError(OrderError):
    """Raised when an order references a product the catalog does not know."""

    code = "invalid_item"
    status_code = 404

    def __init__(self, message: str, product_id: Optional[str] = None):
        self.product_id = product_id
        super().__init__(message)


class AlreadyPaidError(OrderError):
    """Raised when a payment intent is requested for an order that is already paid."""

    code = "already_paid"
    status_code = 400


class DoublePaymentDetectedError(OrderError):
    """
    Raised when a second, distinct payment intent targets an already bound order.

    Never auto-resolved: requires manual review.
    """

    code = "double_payment_detected"
    status_code = 409

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        bound_intent_id: Optional[str] = None,
        incoming_intent_id: Optional[str] = None,
    ):
        self.bound_intent_id = bound_intent_id
        self.incoming_intent_id = incoming_intent_id
        super().__init__(message, order_id=order_id)


class AmountMismatchError(OrderError):
    """Raised when a gateway-reported amount differs from the order's frozen total."""

    code = "amount_mismatch"
    status_code = 400


class SignatureInvalidError(OrderError):
    """Raised when a webhook signature cannot be verified."""

    code = "signature_invalid"
    status_code = 400


class PaymentNotSuccessfulError(OrderError):
    """Raised when the gateway reports the intent as anything but succeeded."""

    code = "payment_not_successful"
    status_code = 400


class InvalidTransitionError(OrderError):
    """Raised for an order status change that is not in the transition graph."""

    code = "invalid_transition"
    status_code = 409


class ConflictError(OrderError):
    """Raised when optimistic-concurrency retries are exhausted."""

    code = "conflict"
    status_code = 409


class GatewayUnavailableError(OrderError):
    """Raised when the payment gateway times out or fails transiently. Retryable."""

    code = "gateway_unavailable"
    status_code = 503


class VersionConflictError(Exception):
    """
    Raised when a versioned save finds a different stored version.

    This prevents lost updates in concurrent scenarios.
    """

    def __init__(self, order_id: str, expected: int, current: int):
        self.order_id = order_id
        self.expected_version = expected
        self.current_version = current
        super().__init__(
            f"Concurrency conflict for order {order_id}: "
            f"expected version {expected}, current version {current}"
        )
