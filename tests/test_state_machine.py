"""
Tests for the order status state machine.
"""
import itertools
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketplace.core import OrderStateMachine
from marketplace.core.state_machine import TRANSITIONS
from marketplace.domain import (
    Actor,
    DoublePaymentDetectedError,
    InvalidTransitionError,
    LineItem,
    Order,
    OrderStatus,
    PaymentReference,
    PriceSnapshot,
    Role,
    UnauthorizedError,
)

OWNER = Actor(user_id="user-1")
STRANGER = Actor(user_id="user-2")
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)
SYSTEM = Actor.system()

# Position in the happy path; Cancelled is a terminal side branch
ORDER_RANK = {
    OrderStatus.CREATED: 0,
    OrderStatus.AWAITING_PAYMENT: 1,
    OrderStatus.PAID: 2,
    OrderStatus.PROCESSING: 3,
    OrderStatus.DELIVERED: 4,
}


def make_order(status: OrderStatus = OrderStatus.CREATED) -> Order:
    snapshot = PriceSnapshot(
        line_items=(LineItem("sku-widget", 2, Decimal("36.00")),),
        subtotal=Decimal("72.00"),
        tax=Decimal("18.00"),
        shipping=Decimal("10.00"),
        total=Decimal("100.00"),
    )
    order = Order.create(OWNER.user_id, snapshot, "usd")
    if status in (OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.DELIVERED):
        order = replace(order, payment_reference=reference("pi_1"))
    return replace(order, status=status)


def reference(intent_id: str) -> PaymentReference:
    return PaymentReference(
        gateway_intent_id=intent_id,
        gateway_status="succeeded",
        payer_email="buyer@example.com",
        settled_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def machine() -> OrderStateMachine:
    return OrderStateMachine()


class TestTransitions:
    """Allowed transitions and their side effects."""

    @pytest.mark.unit
    def test_system_moves_created_order_to_awaiting_payment(
        self, machine: OrderStateMachine
    ) -> None:
        order = make_order()

        updated = machine.transition(order, OrderStatus.AWAITING_PAYMENT, SYSTEM)

        assert updated.status == OrderStatus.AWAITING_PAYMENT
        assert order.status == OrderStatus.CREATED
        assert updated.version == order.version

    @pytest.mark.unit
    def test_system_marks_order_paid_with_reference(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.AWAITING_PAYMENT)

        paid = machine.transition(
            order, OrderStatus.PAID, SYSTEM, payment_reference=reference("pi_1")
        )

        assert paid.status == OrderStatus.PAID
        assert paid.is_paid
        assert paid.payment_reference.gateway_intent_id == "pi_1"
        assert paid.paid_at == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.unit
    def test_delivery_sets_delivered_fields(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.PROCESSING)
        now = datetime(2024, 2, 1, tzinfo=timezone.utc)

        delivered = machine.transition(order, OrderStatus.DELIVERED, ADMIN, now=now)

        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.is_delivered
        assert delivered.delivered_at == now

    @pytest.mark.unit
    @pytest.mark.parametrize("actor", [OWNER, ADMIN])
    @pytest.mark.parametrize(
        "status", [OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT]
    )
    def test_unpaid_order_can_be_cancelled(
        self, machine: OrderStateMachine, actor: Actor, status: OrderStatus
    ) -> None:
        cancelled = machine.transition(make_order(status), OrderStatus.CANCELLED, actor)

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.status.is_terminal


class TestGuards:
    """Transitions outside the graph and actors without the right role."""

    @pytest.mark.unit
    def test_every_transition_outside_the_graph_is_rejected(
        self, machine: OrderStateMachine
    ) -> None:
        for from_status, to_status in itertools.product(OrderStatus, OrderStatus):
            if (from_status, to_status) in TRANSITIONS:
                continue
            with pytest.raises(InvalidTransitionError):
                machine.transition(
                    make_order(from_status),
                    to_status,
                    SYSTEM if to_status == OrderStatus.PAID else ADMIN,
                    payment_reference=reference("pi_1"),
                )

    @pytest.mark.unit
    def test_graph_never_moves_backwards(self) -> None:
        for from_status, to_status in TRANSITIONS:
            if to_status == OrderStatus.CANCELLED:
                assert from_status not in (
                    OrderStatus.PAID,
                    OrderStatus.PROCESSING,
                    OrderStatus.DELIVERED,
                )
                continue
            assert ORDER_RANK[to_status] == ORDER_RANK[from_status] + 1

    @pytest.mark.unit
    def test_cancel_after_paid_is_unsupported(self, machine: OrderStateMachine) -> None:
        with pytest.raises(InvalidTransitionError):
            machine.transition(make_order(OrderStatus.PAID), OrderStatus.CANCELLED, ADMIN)

    @pytest.mark.unit
    def test_paid_requires_system_actor(self, machine: OrderStateMachine) -> None:
        order = make_order(OrderStatus.AWAITING_PAYMENT)

        for actor in (OWNER, ADMIN):
            with pytest.raises(UnauthorizedError):
                machine.transition(
                    order, OrderStatus.PAID, actor, payment_reference=reference("pi_1")
                )

    @pytest.mark.unit
    @pytest.mark.parametrize("actor", [OWNER, ADMIN])
    def test_awaiting_payment_requires_intent_flow(
        self, machine: OrderStateMachine, actor: Actor
    ) -> None:
        with pytest.raises(UnauthorizedError):
            machine.transition(make_order(), OrderStatus.AWAITING_PAYMENT, actor)

    @pytest.mark.unit
    def test_fulfilment_requires_admin(self, machine: OrderStateMachine) -> None:
        with pytest.raises(UnauthorizedError):
            machine.transition(make_order(OrderStatus.PAID), OrderStatus.PROCESSING, OWNER)
        with pytest.raises(UnauthorizedError):
            machine.transition(make_order(OrderStatus.PROCESSING), OrderStatus.DELIVERED, OWNER)

    @pytest.mark.unit
    def test_stranger_cannot_cancel(self, machine: OrderStateMachine) -> None:
        with pytest.raises(UnauthorizedError):
            machine.transition(make_order(), OrderStatus.CANCELLED, STRANGER)

    @pytest.mark.unit
    def test_second_intent_is_double_payment(self, machine: OrderStateMachine) -> None:
        order = replace(
            make_order(OrderStatus.AWAITING_PAYMENT), payment_reference=reference("pi_1")
        )

        with pytest.raises(DoublePaymentDetectedError) as exc_info:
            machine.transition(
                order, OrderStatus.PAID, SYSTEM, payment_reference=reference("pi_2")
            )

        assert exc_info.value.bound_intent_id == "pi_1"
        assert exc_info.value.incoming_intent_id == "pi_2"

    @pytest.mark.unit
    def test_allowed_targets(self, machine: OrderStateMachine) -> None:
        assert machine.allowed_targets(OrderStatus.CREATED) == {
            OrderStatus.AWAITING_PAYMENT,
            OrderStatus.CANCELLED,
        }
        assert machine.allowed_targets(OrderStatus.DELIVERED) == frozenset()
        assert machine.allowed_targets(OrderStatus.CANCELLED) == frozenset()
