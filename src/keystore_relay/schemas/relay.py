"""Schemas for the relay HTTP API."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RelayRequest(BaseModel):
    """Body of ``POST /relay``.

    Both fields are optional at the schema level so a missing field is
    reported as a 400 with an ``error`` message rather than a 422.
    """

    transaction: str | None = Field(default=None, description="Base64 wire transaction.")
    identity: str | None = Field(default=None, description="Base58 identity address.")


class RelayResponse(BaseModel):
    signature: str
    status: str = "success"


class HealthResponse(BaseModel):
    status: str
    relayer: str
    network: str


class BalanceResponse(BaseModel):
    balance: float
    lamports: int


class StatsResponse(BaseModel):
    """Relay counters, with camelCase keys on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    relayer: str
    balance: float
    lamports: int
    transactions_relayed: int = Field(alias="transactionsRelayed")
    total_fees_spent: float = Field(alias="totalFeesSpent")
    uptime_ms: int = Field(alias="uptimeMs")
    uptime_hours: float = Field(alias="uptimeHours")


class ErrorResponse(BaseModel):
    error: str
