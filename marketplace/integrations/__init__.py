"""External integrations: payment gateway and product catalog."""
from .catalog import CatalogPort, InMemoryCatalog, SqlCatalog
from .gateway import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    CreatedIntent,
    GatewayEvent,
    IntentStatus,
    PaymentGatewayClient,
)
from .stripe_client import CircuitBreaker, StripeGatewayClient

__all__ = [
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "CatalogPort",
    "CircuitBreaker",
    "CreatedIntent",
    "GatewayEvent",
    "InMemoryCatalog",
    "IntentStatus",
    "PaymentGatewayClient",
    "SqlCatalog",
    "StripeGatewayClient",
]
