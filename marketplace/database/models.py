"""SQLAlchemy database models for the marketplace order system."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRecord(Base):
    """
    Orders table.

    Prices are stored as a frozen snapshot taken at creation. Only status,
    payment reference, delivery and version columns are ever updated, and
    only through a version-conditional UPDATE.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    line_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    shipping: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    # Payment reference, written once when the order first becomes Paid
    payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="non_negative_total"),
        CheckConstraint("version >= 0", name="non_negative_version"),
        CheckConstraint(
            "status IN ('Created', 'AwaitingPayment', 'Paid', 'Processing', "
            "'Delivered', 'Cancelled')",
            name="valid_order_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        CheckConstraint(
            "NOT is_delivered OR payment_intent_id IS NOT NULL",
            name="delivered_requires_payment",
        ),
        Index("idx_orders_owner_created", "owner_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of OrderRecord."""
        return (
            f"<OrderRecord(id={self.id}, owner_id={self.owner_id}, "
            f"total={self.total}, status={self.status}, version={self.version})>"
        )


class ProductRecord(Base):
    """
    Catalog products table.

    Catalog management lives elsewhere; this service only reads prices.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (CheckConstraint("price >= 0", name="non_negative_price"),)

    def __repr__(self) -> str:
        """String representation of ProductRecord."""
        return f"<ProductRecord(id={self.id}, name={self.name}, price={self.price})>"
