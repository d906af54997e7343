"""Pydantic schemas for the relay API."""

from .relay import (
    BalanceResponse,
    ErrorResponse,
    HealthResponse,
    RelayRequest,
    RelayResponse,
    StatsResponse,
)

__all__ = [
    "BalanceResponse",
    "ErrorResponse",
    "HealthResponse",
    "RelayRequest",
    "RelayResponse",
    "StatsResponse",
]
