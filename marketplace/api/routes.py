"""
API routes for orders, payments, administration and monitoring.

Domain errors propagate to the ``OrderError`` handler in ``main``; the
webhook route is the one place that renders its own (plain-text) error.
"""
from typing import Any, Dict, List, Optional, Union

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketplace.api.dependencies import (
    Services,
    get_current_user,
    get_services,
    require_admin,
)
from marketplace.api.schemas import (
    ConfirmPaymentRequest,
    CreateOrderRequest,
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    ErrorResponse,
    HealthCheckResponse,
    OrderResponse,
    UpdateStatusRequest,
    WebhookResponse,
)
from marketplace.domain import Actor, SignatureInvalidError

logger = structlog.get_logger(__name__)

# Documented error bodies, rendered by the OrderError handler in main.py
ERROR_RESPONSES: Dict[Union[int, str], Dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (400, 401, 404, 409, 503)
}

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"], responses=ERROR_RESPONSES)
order_router = APIRouter(prefix="/orders", tags=["orders"], responses=ERROR_RESPONSES)
admin_router = APIRouter(prefix="/admin", tags=["admin"], responses=ERROR_RESPONSES)
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "/create-payment-intent",
    response_model=CreatePaymentIntentResponse,
    summary="Create payment intent",
    description="Create a gateway payment intent for the order's frozen total",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    user: Actor = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> CreatePaymentIntentResponse:
    logger.info("api_create_payment_intent", order_id=request.order_id, user_id=user.user_id)

    intent = await services.orders.create_payment_intent(request.order_id, user)
    return CreatePaymentIntentResponse(client_secret=intent.client_secret)


@payment_router.put(
    "/confirm-payment",
    response_model=OrderResponse,
    summary="Confirm payment",
    description="Client-side confirmation that a payment intent succeeded",
)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    user: Actor = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> OrderResponse:
    logger.info(
        "api_confirm_payment",
        order_id=request.order_id,
        payment_intent_id=request.payment_id,
        user_id=user.user_id,
    )

    result = await services.reconciler.confirm_payment(
        request.order_id,
        request.payment_id,
        user.user_id,
        payer_email=user.email,
    )
    return OrderResponse.from_order(result.order)


@payment_router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Payment gateway webhook",
    description="Signed webhook deliveries from the payment gateway",
)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Any:
    """
    Handle gateway webhook events.

    Trust is signature-based; no bearer token is required. The raw body is
    passed through untouched so the signature can be checked.
    """
    body = await request.body()

    try:
        outcome = await services.reconciler.handle_webhook_event(body, stripe_signature)
    except SignatureInvalidError as e:
        return PlainTextResponse(f"Webhook Error: {str(e)}", status_code=status.HTTP_400_BAD_REQUEST)

    logger.info(
        "api_webhook_processed",
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        outcome=outcome.status.value,
    )
    return WebhookResponse(received=True)


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
)
async def create_order(
    request: CreateOrderRequest,
    user: Actor = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.create_order(
        user, [item.to_domain() for item in request.items]
    )
    return OrderResponse.from_order(order)


@order_router.get("/mine", response_model=List[OrderResponse], summary="List my orders")
async def list_my_orders(
    user: Actor = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> List[OrderResponse]:
    orders = await services.orders.list_my_orders(user)
    return [OrderResponse.from_order(o) for o in orders]


@order_router.get("", response_model=List[OrderResponse], summary="List all orders")
async def list_orders(
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> List[OrderResponse]:
    orders = await services.orders.list_orders(admin)
    return [OrderResponse.from_order(o) for o in orders]


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get order")
async def get_order(
    order_id: str,
    user: Actor = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.get_order(order_id, user)
    return OrderResponse.from_order(order)


@order_router.put("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel order")
async def cancel_order(
    order_id: str,
    user: Actor = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.cancel_order(order_id, user)
    return OrderResponse.from_order(order)


@admin_router.put(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
)
async def update_order_status(
    order_id: str,
    request: UpdateStatusRequest,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.update_status(order_id, request.status, admin)
    return OrderResponse.from_order(order)


@admin_router.put(
    "/orders/{order_id}/deliver",
    response_model=OrderResponse,
    summary="Mark order delivered",
)
async def mark_order_delivered(
    order_id: str,
    admin: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.mark_delivered(order_id, admin)
    return OrderResponse.from_order(order)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
