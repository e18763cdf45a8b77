"""
Order application service.

Owns order creation, payment-intent creation and the administrative and
owner-driven status changes. Every mutation goes through the state machine
and the store's versioned save, retried on conflict like payment apply.
"""
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

import structlog

from marketplace.core.order_store import OrderStore
from marketplace.core.pricing import PriceCalculator
from marketplace.core.retry import conflict_retrying
from marketplace.core.state_machine import OrderStateMachine
from marketplace.domain import (
    Actor,
    AlreadyPaidError,
    ConflictError,
    InvalidTransitionError,
    ItemRequest,
    Order,
    OrderStatus,
    UnauthorizedError,
    VersionConflictError,
)
from marketplace.integrations.gateway import CreatedIntent, PaymentGatewayClient
from marketplace.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def intent_idempotency_key(order_id: str) -> str:
    """Gateway idempotency key: one payment intent per order."""
    return f"order:{order_id}:intent"


class OrderService:
    """Use cases around the order lifecycle, excluding payment reconciliation."""

    def __init__(
        self,
        store: OrderStore,
        calculator: PriceCalculator,
        gateway: PaymentGatewayClient,
        state_machine: OrderStateMachine,
        currency: str = "usd",
        tax_rate: Decimal = Decimal("0.15"),
        shipping_fee: Decimal = Decimal("10.00"),
        gateway_timeout: float = 10.0,
        max_attempts: int = 3,
        retry_jitter: float = 0.05,
    ):
        self.store = store
        self.calculator = calculator
        self.gateway = gateway
        self.state_machine = state_machine
        self.currency = currency
        self.tax_rate = tax_rate
        self.shipping_fee = shipping_fee
        self.gateway_timeout = gateway_timeout
        self.max_attempts = max_attempts
        self.retry_jitter = retry_jitter

    async def create_order(self, owner: Actor, items: Sequence[ItemRequest]) -> Order:
        """
        Create an order owned by ``owner`` with frozen prices.

        Raises:
            ValidationError: If items are empty or malformed
            InvalidItemError: If a product does not exist
        """
        snapshot = await self.calculator.compute_snapshot(
            items, self.tax_rate, self.shipping_fee
        )
        order = await self.store.add(Order.create(owner.user_id, snapshot, self.currency))

        metrics.record_order_created(order.currency, order.total_minor_units)
        logger.info(
            "order_created",
            order_id=order.id,
            owner_id=order.owner_id,
            item_count=len(order.line_items),
            total=str(order.total),
            currency=order.currency,
        )
        return order

    async def create_payment_intent(self, order_id: str, user: Actor) -> CreatedIntent:
        """
        Create (or re-fetch) the gateway payment intent for an order.

        The intent is always for the order's frozen total. The gateway call
        is idempotent per order, so a repeated request returns the same
        intent. The order moves to AwaitingPayment after the gateway call.

        Raises:
            NotFoundError: If the order does not exist
            UnauthorizedError: If the caller does not own the order
            AlreadyPaidError: If the order is already paid
            InvalidTransitionError: If the order was cancelled
            GatewayUnavailableError: If the gateway times out
        """
        order = await self.store.find_by_id(order_id)

        if not order.is_owned_by(user.user_id):
            raise UnauthorizedError("Not authorized to pay for this order", order_id=order.id)
        if order.is_paid:
            raise AlreadyPaidError(f"Order {order.id} is already paid", order_id=order.id)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransitionError(
                f"Order {order.id} is cancelled and cannot be paid", order_id=order.id
            )

        intent = await self.gateway.create_intent(
            order.total,
            order.currency,
            metadata={"order_id": order.id, "owner_id": order.owner_id},
            idempotency_key=intent_idempotency_key(order.id),
            timeout=self.gateway_timeout,
        )

        def await_payment(current: Order) -> Optional[Order]:
            # Reloaded state may have been cancelled while the gateway call ran
            if current.status == OrderStatus.CANCELLED:
                raise InvalidTransitionError(
                    f"Order {current.id} was cancelled and cannot be paid",
                    order_id=current.id,
                )
            if current.status != OrderStatus.CREATED:
                return None
            return self.state_machine.transition(
                current, OrderStatus.AWAITING_PAYMENT, Actor.system()
            )

        await self._mutate(order.id, await_payment, first=order)

        metrics.record_payment_intent_created(order.currency)
        logger.info(
            "payment_intent_ready",
            order_id=order.id,
            payment_intent_id=intent.intent_id,
            amount=str(order.total),
        )
        return intent

    async def get_order(self, order_id: str, user: Actor) -> Order:
        order = await self.store.find_by_id(order_id)
        self._check_access(order, user)
        return order

    async def list_my_orders(self, user: Actor) -> List[Order]:
        return await self.store.list_by_owner(user.user_id)

    async def list_orders(self, admin: Actor) -> List[Order]:
        self._require_admin(admin)
        return await self.store.list_all()

    async def update_status(self, order_id: str, status: OrderStatus, admin: Actor) -> Order:
        """
        Administrative status change, validated by the state machine.

        Raises:
            UnauthorizedError: If the actor is not an administrator
            InvalidTransitionError: If the change is not in the transition graph
        """
        self._require_admin(admin)

        def change(current: Order) -> Optional[Order]:
            return self.state_machine.transition(current, status, admin)

        return await self._mutate(order_id, change)

    async def mark_delivered(self, order_id: str, admin: Actor) -> Order:
        """
        Mark a paid order delivered.

        A Paid order is moved through Processing first, in the same write.
        """
        self._require_admin(admin)

        def deliver(current: Order) -> Optional[Order]:
            if current.status == OrderStatus.PAID:
                current = self.state_machine.transition(
                    current, OrderStatus.PROCESSING, admin
                )
            return self.state_machine.transition(current, OrderStatus.DELIVERED, admin)

        return await self._mutate(order_id, deliver)

    async def cancel_order(self, order_id: str, user: Actor) -> Order:
        """
        Cancel an unpaid order. Owner or administrator only.

        Raises:
            InvalidTransitionError: If the order is already paid or finished
        """

        def cancel(current: Order) -> Optional[Order]:
            self._check_access(current, user)
            return self.state_machine.transition(current, OrderStatus.CANCELLED, user)

        return await self._mutate(order_id, cancel)

    @staticmethod
    def _check_access(order: Order, user: Actor) -> None:
        if not (user.is_admin or order.is_owned_by(user.user_id)):
            raise UnauthorizedError("Not authorized to access this order", order_id=order.id)

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise UnauthorizedError("Administrator role required")

    async def _mutate(
        self,
        order_id: str,
        change: Callable[[Order], Optional[Order]],
        first: Optional[Order] = None,
    ) -> Order:
        """
        Load, change and conditionally save an order, retrying on conflicts.

        ``change`` returns the new state, or None when nothing needs writing.
        ``first`` is used as the loaded state on the first attempt only.
        """
        preloaded = first

        async def attempt() -> Order:
            nonlocal preloaded
            current = preloaded
            preloaded = None
            if current is None:
                current = await self.store.find_by_id(order_id)

            updated = change(current)
            if updated is None:
                return current

            try:
                saved = await self.store.save_with_version(updated)
            except VersionConflictError:
                metrics.record_version_conflict()
                raise
            metrics.record_transition(current.status.value, saved.status.value)
            logger.info(
                "order_status_changed",
                order_id=saved.id,
                from_status=current.status.value,
                to_status=saved.status.value,
                version=saved.version,
            )
            return saved

        try:
            return await conflict_retrying(self.max_attempts, self.retry_jitter)(attempt)
        except VersionConflictError as e:
            raise ConflictError(
                f"Order {order_id} was modified concurrently; retries exhausted",
                order_id=str(order_id),
            ) from e
