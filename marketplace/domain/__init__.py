"""Domain model for orders and payments."""
from .errors import (
    AlreadyPaidError,
    AmountMismatchError,
    ConflictError,
    DoublePaymentDetectedError,
    GatewayUnavailableError,
    InvalidItemError,
    InvalidTransitionError,
    NotFoundError,
    OrderError,
    PaymentNotSuccessfulError,
    SignatureInvalidError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
)
from .order import (
    PAID_OR_LATER,
    Actor,
    ItemRequest,
    LineItem,
    Order,
    OrderStatus,
    PaymentReference,
    PriceSnapshot,
    Role,
    quantize_money,
    to_minor_units,
)

__all__ = [
    "PAID_OR_LATER",
    "Actor",
    "AlreadyPaidError",
    "AmountMismatchError",
    "ConflictError",
    "DoublePaymentDetectedError",
    "GatewayUnavailableError",
    "InvalidItemError",
    "InvalidTransitionError",
    "ItemRequest",
    "LineItem",
    "NotFoundError",
    "Order",
    "OrderError",
    "OrderStatus",
    "PaymentNotSuccessfulError",
    "PaymentReference",
    "PriceSnapshot",
    "Role",
    "SignatureInvalidError",
    "UnauthorizedError",
    "ValidationError",
    "VersionConflictError",
    "quantize_money",
    "to_minor_units",
]
