"""
Order status state machine.

State machine:
CREATED → AWAITING_PAYMENT → PAID → PROCESSING → DELIVERED
   ↓             ↓
CANCELLED    CANCELLED

Transitions are pure: they return a new ``Order`` and never touch storage.
Persisting the result is the caller's job (through a versioned save).
"""
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

import structlog

from marketplace.domain import (
    Actor,
    DoublePaymentDetectedError,
    InvalidTransitionError,
    Order,
    OrderStatus,
    PaymentReference,
    Role,
    UnauthorizedError,
    ValidationError,
)
from marketplace.domain.order import utcnow

logger = structlog.get_logger(__name__)

OWNER = "owner"

# (from, to) -> who may trigger it. OWNER means the order's owner.
TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[str]] = {
    # Only the payment-intent flow opens a payment window
    (OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT): frozenset({Role.SYSTEM.value}),
    (OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID): frozenset({Role.SYSTEM.value}),
    (OrderStatus.PAID, OrderStatus.PROCESSING): frozenset({Role.ADMIN.value}),
    (OrderStatus.PROCESSING, OrderStatus.DELIVERED): frozenset({Role.ADMIN.value}),
    (OrderStatus.CREATED, OrderStatus.CANCELLED): frozenset({OWNER, Role.ADMIN.value}),
    (OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED): frozenset(
        {OWNER, Role.ADMIN.value}
    ),
}


class OrderStateMachine:
    """Validates and applies order status transitions."""

    def can_transition(self, from_status: OrderStatus, to_status: OrderStatus) -> bool:
        return (from_status, to_status) in TRANSITIONS

    def allowed_targets(self, from_status: OrderStatus) -> FrozenSet[OrderStatus]:
        return frozenset(to for (frm, to) in TRANSITIONS if frm == from_status)

    def _check_actor(self, order: Order, to_status: OrderStatus, actor: Actor) -> None:
        allowed = TRANSITIONS[(order.status, to_status)]
        if actor.role.value in allowed:
            return
        if OWNER in allowed and order.is_owned_by(actor.user_id):
            return
        raise UnauthorizedError(
            f"Not authorized to move order from {order.status.value} to {to_status.value}",
            order_id=order.id,
        )

    def transition(
        self,
        order: Order,
        to_status: OrderStatus,
        actor: Actor,
        payment_reference: Optional[PaymentReference] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Move ``order`` to ``to_status``.

        Args:
            order: Current order state
            to_status: Requested status
            actor: Who triggers the change
            payment_reference: Required for the Paid transition
            now: Timestamp to stamp on the change (defaults to current UTC time)

        Returns:
            Order: New order state (version unchanged; the store bumps it)

        Raises:
            InvalidTransitionError: If the transition is not in the graph
            UnauthorizedError: If the actor may not trigger this transition
            DoublePaymentDetectedError: If another intent is already bound
        """
        if not self.can_transition(order.status, to_status):
            raise InvalidTransitionError(
                f"Cannot transition order from {order.status.value} to {to_status.value}",
                order_id=order.id,
            )

        self._check_actor(order, to_status, actor)

        now = now or utcnow()
        changes: Dict[str, object] = {"status": to_status, "updated_at": now}

        if to_status == OrderStatus.PAID:
            if payment_reference is None:
                raise ValidationError(
                    "A payment reference is required to mark an order paid",
                    order_id=order.id,
                )
            bound = order.payment_reference
            if bound is not None and bound.gateway_intent_id != payment_reference.gateway_intent_id:
                raise DoublePaymentDetectedError(
                    f"Order {order.id} is already bound to payment {bound.gateway_intent_id}",
                    order_id=order.id,
                    bound_intent_id=bound.gateway_intent_id,
                    incoming_intent_id=payment_reference.gateway_intent_id,
                )
            changes["payment_reference"] = payment_reference

        if to_status == OrderStatus.DELIVERED:
            changes["is_delivered"] = True
            changes["delivered_at"] = now

        logger.debug(
            "order_transition_computed",
            order_id=order.id,
            from_status=order.status.value,
            to_status=to_status.value,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
        )

        return replace(order, **changes)
