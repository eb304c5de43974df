"""Configuration package for the storefront payment service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
