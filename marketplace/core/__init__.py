"""Order/payment core: pricing, state machine, persistence and reconciliation."""
from .order_store import InMemoryOrderStore, OrderStore, SqlAlchemyOrderStore
from .orders import OrderService
from .pricing import PriceCalculator
from .reconciler import PaymentReconciler, ReconciliationResult, WebhookOutcome, WebhookStatus
from .state_machine import OrderStateMachine

__all__ = [
    "InMemoryOrderStore",
    "OrderService",
    "OrderStateMachine",
    "OrderStore",
    "PaymentReconciler",
    "PriceCalculator",
    "ReconciliationResult",
    "SqlAlchemyOrderStore",
    "WebhookOutcome",
    "WebhookStatus",
]
