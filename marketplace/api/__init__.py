"""HTTP API for the marketplace order service."""
from .main import create_app

__all__ = ["create_app"]
