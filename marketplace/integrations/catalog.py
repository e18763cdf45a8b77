"""
Catalog boundary: current product prices.

Catalog management lives in another service. Order creation only needs a
``product_id -> price`` lookup, which both implementations below provide.
"""
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.database.models import ProductRecord
from marketplace.domain import quantize_money

logger = structlog.get_logger(__name__)


class CatalogPort(Protocol):
    """Port describing the catalog lookups consumed by the price calculator."""

    async def get_prices(self, product_ids: Iterable[str]) -> Dict[str, Decimal]:
        """
        Return current prices for the known ids.

        Unknown ids are simply absent from the result.
        """
        ...


class InMemoryCatalog:
    """In-memory catalog for tests and local development."""

    def __init__(self, prices: Mapping[str, Decimal] | None = None):
        self._prices: Dict[str, Decimal] = {
            k: quantize_money(Decimal(v)) for k, v in (prices or {}).items()
        }

    def set_price(self, product_id: str, price: Decimal) -> None:
        self._prices[product_id] = quantize_money(Decimal(price))

    async def get_prices(self, product_ids: Iterable[str]) -> Dict[str, Decimal]:
        return {pid: self._prices[pid] for pid in product_ids if pid in self._prices}


class SqlCatalog:
    """Reads product prices from the shared products table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_prices(self, product_ids: Iterable[str]) -> Dict[str, Decimal]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}

        async with self.session_factory() as session:
            stmt = select(ProductRecord.id, ProductRecord.price).where(
                ProductRecord.id.in_(ids)
            )
            rows = (await session.execute(stmt)).all()

        prices = {str(row.id): quantize_money(row.price) for row in rows}
        logger.debug("catalog_prices_loaded", requested=len(ids), found=len(prices))
        return prices
