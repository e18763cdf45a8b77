"""Database package for the marketplace service."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .models import Base, OrderRecord, ProductRecord

__all__ = [
    "Base",
    "OrderRecord",
    "ProductRecord",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
