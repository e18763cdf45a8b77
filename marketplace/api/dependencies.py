"""
Service wiring and request dependencies.

All components are built once from ``Settings`` and stored on
``app.state.services``; routes reach them through ``Depends``.
"""
from dataclasses import dataclass
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.config import Settings
from marketplace.core import (
    InMemoryOrderStore,
    OrderService,
    OrderStateMachine,
    OrderStore,
    PaymentReconciler,
    PriceCalculator,
    SqlAlchemyOrderStore,
)
from marketplace.domain import Actor, Role, UnauthorizedError
from marketplace.integrations import (
    CatalogPort,
    InMemoryCatalog,
    PaymentGatewayClient,
    SqlCatalog,
    StripeGatewayClient,
)
from marketplace.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Services:
    """Container for the application's long-lived components."""

    settings: Settings
    store: OrderStore
    catalog: CatalogPort
    gateway: PaymentGatewayClient
    orders: OrderService
    reconciler: PaymentReconciler
    health: HealthCheck


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    store: Optional[OrderStore] = None,
    catalog: Optional[CatalogPort] = None,
    gateway: Optional[PaymentGatewayClient] = None,
) -> Services:
    """
    Build every component from configuration.

    With a session factory, orders and prices live in PostgreSQL; without
    one, in-memory implementations are used. Explicit ``store``, ``catalog``
    and ``gateway`` arguments override both.
    """
    if store is None:
        store = (
            SqlAlchemyOrderStore(session_factory) if session_factory else InMemoryOrderStore()
        )
    if catalog is None:
        catalog = SqlCatalog(session_factory) if session_factory else InMemoryCatalog()
    if gateway is None:
        gateway = StripeGatewayClient(
            settings.stripe_secret_key,
            api_version=settings.stripe_api_version,
            default_timeout=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_retry_max_attempts,
        )

    state_machine = OrderStateMachine()

    orders = OrderService(
        store=store,
        calculator=PriceCalculator(catalog),
        gateway=gateway,
        state_machine=state_machine,
        currency=settings.currency,
        tax_rate=settings.tax_rate,
        shipping_fee=settings.shipping_fee,
        gateway_timeout=settings.gateway_timeout_seconds,
        max_attempts=settings.reconcile_max_attempts,
        retry_jitter=settings.reconcile_retry_jitter_seconds,
    )
    reconciler = PaymentReconciler(
        store=store,
        gateway=gateway,
        state_machine=state_machine,
        webhook_secret=settings.stripe_webhook_secret,
        gateway_timeout=settings.gateway_timeout_seconds,
        max_attempts=settings.reconcile_max_attempts,
        retry_jitter=settings.reconcile_retry_jitter_seconds,
    )

    return Services(
        settings=settings,
        store=store,
        catalog=catalog,
        gateway=gateway,
        orders=orders,
        reconciler=reconciler,
        health=HealthCheck(session_factory),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services are not initialized")
    return services


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> Actor:
    """
    Resolve the caller from a bearer token.

    Tokens are issued by the accounts service and carry ``sub`` (user id),
    ``role`` and ``email`` claims.
    """
    if credentials is None:
        raise UnauthorizedError("Not authorized, no token")

    settings = services.settings
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.PyJWTError as e:
        logger.warning("invalid_bearer_token", error=str(e))
        raise UnauthorizedError("Not authorized, token failed") from e

    role = claims.get("role", Role.USER.value)
    if role not in (Role.USER.value, Role.ADMIN.value):
        raise UnauthorizedError("Not authorized, unknown role")

    return Actor(user_id=str(claims["sub"]), role=Role(role), email=claims.get("email"))


async def require_admin(user: Actor = Depends(get_current_user)) -> Actor:
    if not user.is_admin:
        raise UnauthorizedError("Not authorized as an admin")
    return user
