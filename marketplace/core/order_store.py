"""
Order persistence with optimistic concurrency.

``save_with_version`` is a compare-and-swap: the write succeeds only if the
stored version still equals ``order.version``, and the stored version is then
incremented. It is the only synchronization primitive the reconciler relies
on. Only mutable columns are written; totals, owner, currency and line items
are fixed at insert time.
"""
import asyncio
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.database.models import OrderRecord
from marketplace.domain import (
    DoublePaymentDetectedError,
    LineItem,
    NotFoundError,
    Order,
    OrderStatus,
    PaymentReference,
    ValidationError,
    VersionConflictError,
)

logger = structlog.get_logger(__name__)


class OrderStore(Protocol):
    """Persistence port for orders."""

    async def add(self, order: Order) -> Order:
        """Insert a new order at version 0."""
        ...

    async def find_by_id(self, order_id: str) -> Order:
        """Load an order or raise ``NotFoundError``."""
        ...

    async def save_with_version(self, order: Order) -> Order:
        """
        Conditionally write ``order``.

        Raises:
            VersionConflictError: If the stored version differs from ``order.version``
        """
        ...

    async def list_by_owner(self, owner_id: str) -> List[Order]:
        """Orders placed by ``owner_id``, newest first."""
        ...

    async def list_all(self) -> List[Order]:
        """All orders, newest first."""
        ...


def _mutable_fields(order: Order) -> Dict[str, Any]:
    return {
        "status": order.status,
        "payment_reference": order.payment_reference,
        "is_delivered": order.is_delivered,
        "delivered_at": order.delivered_at,
        "updated_at": order.updated_at,
    }


class InMemoryOrderStore:
    """
    In-memory order store for tests and local development.

    Reads yield to the event loop before returning, so concurrent coroutines
    interleave the way they would against a real database.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def add(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ValidationError(f"Order {order.id} already exists", order_id=order.id)
            stored = replace(order, version=0)
            self._orders[order.id] = stored
        return stored

    async def find_by_id(self, order_id: str) -> Order:
        await asyncio.sleep(0)
        order = self._orders.get(str(order_id))
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        return order

    async def save_with_version(self, order: Order) -> Order:
        async with self._lock:
            current = self._orders.get(order.id)
            if current is None:
                raise NotFoundError(f"Order {order.id} not found", order_id=order.id)

            # Optimistic concurrency check
            if current.version != order.version:
                raise VersionConflictError(order.id, order.version, current.version)

            reference = order.payment_reference
            if reference is not None:
                for other in self._orders.values():
                    if (
                        other.id != order.id
                        and other.payment_reference is not None
                        and other.payment_reference.gateway_intent_id
                        == reference.gateway_intent_id
                    ):
                        raise DoublePaymentDetectedError(
                            f"Payment {reference.gateway_intent_id} is already bound "
                            f"to order {other.id}",
                            order_id=order.id,
                            bound_intent_id=reference.gateway_intent_id,
                            incoming_intent_id=reference.gateway_intent_id,
                        )

            saved = replace(current, version=current.version + 1, **_mutable_fields(order))
            self._orders[order.id] = saved
        return saved

    async def list_by_owner(self, owner_id: str) -> List[Order]:
        orders = [o for o in self._orders.values() if o.owner_id == str(owner_id)]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_all(self) -> List[Order]:
        return sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)


def _line_items_to_json(line_items: tuple) -> List[Dict[str, Any]]:
    return [
        {
            "product_id": li.product_id,
            "quantity": li.quantity,
            "unit_price": str(li.unit_price_snapshot),
        }
        for li in line_items
    ]


def _record_to_order(record: OrderRecord) -> Order:
    """Map a database row to the domain aggregate."""
    reference = None
    if record.payment_intent_id:
        reference = PaymentReference(
            gateway_intent_id=record.payment_intent_id,
            gateway_status=record.payment_status or "",
            payer_email=record.payer_email,
            settled_at=record.settled_at,
        )

    return Order(
        id=str(record.id),
        owner_id=record.owner_id,
        line_items=tuple(
            LineItem(
                product_id=item["product_id"],
                quantity=int(item["quantity"]),
                unit_price_snapshot=Decimal(item["unit_price"]),
            )
            for item in record.line_items
        ),
        subtotal=record.subtotal,
        tax=record.tax,
        shipping=record.shipping,
        total=record.total,
        currency=record.currency,
        status=OrderStatus(record.status),
        payment_reference=reference,
        is_delivered=record.is_delivered,
        delivered_at=record.delivered_at,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class SqlAlchemyOrderStore:
    """
    PostgreSQL-backed order store.

    Each call runs in its own transaction. The versioned save is a single
    ``UPDATE ... WHERE id = :id AND version = :version``; zero affected rows
    means another writer got there first.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, order: Order) -> Order:
        record = OrderRecord(
            id=order.id,
            owner_id=order.owner_id,
            line_items=_line_items_to_json(order.line_items),
            subtotal=order.subtotal,
            tax=order.tax,
            shipping=order.shipping,
            total=order.total,
            currency=order.currency,
            status=order.status.value,
            is_delivered=False,
            version=0,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()

        logger.debug("order_inserted", order_id=order.id)
        return replace(order, version=0)

    async def find_by_id(self, order_id: str) -> Order:
        if not _is_uuid(order_id):
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))

        async with self.session_factory() as session:
            record = await session.get(OrderRecord, str(order_id))
            if record is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
            return _record_to_order(record)

    async def save_with_version(self, order: Order) -> Order:
        reference = order.payment_reference
        values: Dict[str, Any] = {
            "status": order.status.value,
            "payment_intent_id": reference.gateway_intent_id if reference else None,
            "payment_status": reference.gateway_status if reference else None,
            "payer_email": reference.payer_email if reference else None,
            "settled_at": reference.settled_at if reference else None,
            "is_delivered": order.is_delivered,
            "delivered_at": order.delivered_at,
            "updated_at": order.updated_at,
            "version": OrderRecord.version + 1,
        }

        stmt = (
            update(OrderRecord)
            .where(OrderRecord.id == order.id, OrderRecord.version == order.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                rows_updated = result.rowcount

                if rows_updated == 0:
                    current = await session.scalar(
                        select(OrderRecord.version).where(OrderRecord.id == order.id)
                    )
                    await session.rollback()
                    if current is None:
                        raise NotFoundError(f"Order {order.id} not found", order_id=order.id)
                    raise VersionConflictError(order.id, order.version, current)

                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                # Only the unique payment_intent_id column maps to a domain error
                if reference is None or "payment_intent_id" not in str(e.orig):
                    raise
                logger.error(
                    "payment_intent_already_bound",
                    order_id=order.id,
                    payment_intent_id=reference.gateway_intent_id,
                )
                raise DoublePaymentDetectedError(
                    f"Payment {reference.gateway_intent_id} is already bound to another order",
                    order_id=order.id,
                    incoming_intent_id=reference.gateway_intent_id,
                ) from e

        return replace(order, version=order.version + 1)

    async def list_by_owner(self, owner_id: str) -> List[Order]:
        async with self.session_factory() as session:
            stmt = (
                select(OrderRecord)
                .where(OrderRecord.owner_id == str(owner_id))
                .order_by(OrderRecord.created_at.desc())
            )
            records = (await session.scalars(stmt)).all()
            return [_record_to_order(r) for r in records]

    async def list_all(self) -> List[Order]:
        async with self.session_factory() as session:
            stmt = select(OrderRecord).order_by(OrderRecord.created_at.desc())
            records = (await session.scalars(stmt)).all()
            return [_record_to_order(r) for r in records]
