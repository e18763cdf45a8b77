"""
Pydantic schemas for API request/response models.

Field names are snake_case in Python and camelCase on the wire.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic.alias_generators import to_camel

from marketplace.domain import ItemRequest, Order, OrderStatus


class CamelModel(BaseModel):
    """Base model: camelCase aliases, populate by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemRequest(CamelModel):
    """A requested product and quantity."""

    product_id: str = Field(..., min_length=1, description="Catalog product identifier")
    quantity: StrictInt = Field(..., gt=0, description="Number of units")

    def to_domain(self) -> ItemRequest:
        return ItemRequest(product_id=self.product_id, quantity=self.quantity)


class CreateOrderRequest(CamelModel):
    """Request schema for creating an order. Prices come from the catalog."""

    items: List[OrderItemRequest] = Field(..., description="Requested items")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"items": [{"productId": "sku-123", "quantity": 2}]}]
        }
    )


class CreatePaymentIntentRequest(CamelModel):
    """Request schema for creating a payment intent."""

    order_id: str = Field(..., min_length=1, description="Order to pay")


class CreatePaymentIntentResponse(CamelModel):
    """Response schema for payment intent creation."""

    client_secret: str = Field(..., description="Client secret used by the payment form")


class ConfirmPaymentRequest(CamelModel):
    """Request schema for confirming a payment from the client."""

    order_id: str = Field(..., min_length=1, description="Order that was paid")
    payment_id: str = Field(..., min_length=1, description="Gateway payment intent ID")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "orderId": "123e4567-e89b-12d3-a456-426614174000",
                    "paymentId": "pi_1234567890",
                }
            ]
        }
    )


class UpdateStatusRequest(CamelModel):
    """Request schema for an administrative status change."""

    status: OrderStatus = Field(..., description="Target order status")


class LineItemResponse(CamelModel):
    product_id: str
    quantity: int
    unit_price: float


class PaymentReferenceResponse(CamelModel):
    id: str
    status: str
    update_time: Optional[datetime] = None
    email: Optional[str] = None


class OrderResponse(CamelModel):
    """Order representation."""

    id: str = Field(..., description="Order ID")
    owner_id: str = Field(..., description="Purchasing user")
    line_items: List[LineItemResponse]
    subtotal: float
    tax: float
    shipping: float
    total: float
    currency: str
    status: OrderStatus
    is_paid: bool
    paid_at: Optional[datetime] = None
    payment_reference: Optional[PaymentReferenceResponse] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        reference = order.payment_reference
        return cls(
            id=order.id,
            owner_id=order.owner_id,
            line_items=[
                LineItemResponse(
                    product_id=li.product_id,
                    quantity=li.quantity,
                    unit_price=float(li.unit_price_snapshot),
                )
                for li in order.line_items
            ],
            subtotal=float(order.subtotal),
            tax=float(order.tax),
            shipping=float(order.shipping),
            total=float(order.total),
            currency=order.currency,
            status=order.status,
            is_paid=order.is_paid,
            paid_at=order.paid_at,
            payment_reference=(
                PaymentReferenceResponse(
                    id=reference.gateway_intent_id,
                    status=reference.gateway_status,
                    update_time=reference.settled_at,
                    email=reference.payer_email,
                )
                if reference
                else None
            ),
            is_delivered=order.is_delivered,
            delivered_at=order.delivered_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
            version=order.version,
        )


class WebhookResponse(CamelModel):
    """Response schema for webhook processing."""

    received: bool = True


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
