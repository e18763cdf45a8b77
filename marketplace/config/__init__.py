"""Configuration package for the marketplace service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
