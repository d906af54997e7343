"""API endpoint modules for version 1."""

from .relay import router as relay_router

__all__ = [
    "relay_router",
]
