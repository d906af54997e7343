"""Version 1 API endpoints."""

from .endpoints import relay_router

__all__ = [
    "relay_router",
]
