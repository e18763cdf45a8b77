"""
Order aggregate and the value objects it is built from.

Everything here is immutable: state changes produce a new ``Order`` via
``dataclasses.replace``. Totals, owner and line items are fixed at creation,
so no code path can recompute them from live catalog prices.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Tuple

CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    """Round to two decimal places using banker-safe HALF_UP."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a money amount to integer minor units (cents).

    Example: Decimal("100.00") -> 10000
    """
    return int((quantize_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    State machine:
    CREATED → AWAITING_PAYMENT → PAID → PROCESSING → DELIVERED
       ↓             ↓
    CANCELLED    CANCELLED
    """

    CREATED = "Created"
    AWAITING_PAYMENT = "AwaitingPayment"
    PAID = "Paid"
    PROCESSING = "Processing"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


PAID_OR_LATER = frozenset({OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.DELIVERED})


class Role(str, Enum):
    """Roles an actor can hold when driving a transition."""

    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who is asking for a change: a user, an administrator or the system itself."""

    user_id: str
    role: Role = Role.USER
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @classmethod
    def system(cls) -> Actor:
        return cls(user_id="system", role=Role.SYSTEM)


@dataclass(frozen=True)
class ItemRequest:
    """A requested line: which product and how many units."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class LineItem:
    """A line item with the unit price captured when the order was created."""

    product_id: str
    quantity: int
    unit_price_snapshot: Decimal

    @property
    def line_total(self) -> Decimal:
        return quantize_money(self.unit_price_snapshot * self.quantity)


@dataclass(frozen=True)
class PriceSnapshot:
    """Frozen prices for an order, derived once from the catalog."""

    line_items: Tuple[LineItem, ...]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal


@dataclass(frozen=True)
class PaymentReference:
    """
    Gateway payment bound to an order.

    Set exactly once, when the order first becomes Paid. The intent id is the
    deduplication key for both completion channels.
    """

    gateway_intent_id: str
    gateway_status: str
    payer_email: Optional[str]
    settled_at: datetime


@dataclass(frozen=True)
class Order:
    """
    Order aggregate root.

    ``version`` is the optimistic-concurrency counter; the store bumps it on
    every successful conditional save.
    """

    id: str
    owner_id: str
    line_items: Tuple[LineItem, ...]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str = "usd"
    status: OrderStatus = OrderStatus.CREATED
    payment_reference: Optional[PaymentReference] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, owner_id: str, snapshot: PriceSnapshot, currency: str) -> Order:
        """Factory method: start a new order from a frozen price snapshot."""
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            line_items=snapshot.line_items,
            subtotal=snapshot.subtotal,
            tax=snapshot.tax,
            shipping=snapshot.shipping,
            total=snapshot.total,
            currency=currency,
            status=OrderStatus.CREATED,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_OR_LATER

    @property
    def paid_at(self) -> Optional[datetime]:
        return self.payment_reference.settled_at if self.payment_reference else None

    @property
    def total_minor_units(self) -> int:
        return to_minor_units(self.total)

    def is_owned_by(self, user_id: str) -> bool:
        return self.owner_id == str(user_id)
