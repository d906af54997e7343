"""Relay endpoints: health, balance, stats and transaction relaying."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from keystore_relay.core.errors import ValidationError
from keystore_relay.core.transaction import deserialize_from_relay
from keystore_relay.schemas import (
    BalanceResponse,
    ErrorResponse,
    HealthResponse,
    RelayRequest,
    RelayResponse,
    StatsResponse,
)
from keystore_relay.services.relayer import RelayerService, get_relayer_service, parse_identity

# Configure logger for this module
logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


def get_relayer_service_dep() -> RelayerService:
    """Get RelayerService dependency for dependency injection."""
    return get_relayer_service()


RelayerServiceDep = Annotated[RelayerService, Depends(get_relayer_service_dep)]


@router.get("/health", response_model=HealthResponse)
async def health(relayer: RelayerServiceDep) -> HealthResponse:
    """Report liveness together with the relay address and network."""
    info = relayer.health()
    return HealthResponse(status=info.status, relayer=info.relayer, network=info.network)


@router.get("/balance", response_model=BalanceResponse, responses={500: {"model": ErrorResponse}})
async def balance(relayer: RelayerServiceDep) -> BalanceResponse:
    """Return the relay fee payer's balance."""
    current = await relayer.balance()
    return BalanceResponse(balance=current.sol, lamports=current.lamports)


@router.get("/stats", response_model=StatsResponse, responses={500: {"model": ErrorResponse}})
async def stats(relayer: RelayerServiceDep) -> StatsResponse:
    """Return relay counters and balance."""
    snapshot = await relayer.stats()
    return StatsResponse(
        relayer=snapshot.relayer,
        balance=snapshot.balance,
        lamports=snapshot.lamports,
        transactions_relayed=snapshot.transactions_relayed,
        total_fees_spent=snapshot.total_fees_spent,
        uptime_ms=snapshot.uptime_ms,
        uptime_hours=snapshot.uptime_hours,
    )


@router.post(
    "/relay",
    response_model=RelayResponse,
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def relay(payload: RelayRequest, relayer: RelayerServiceDep) -> RelayResponse:
    """Fee-pay and submit a transaction on behalf of an identity.

    Missing or undecodable fields answer 400. Rate limiting answers 429.
    Structural rejection and submission failures answer 500.
    """
    if not payload.transaction or not payload.identity:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing transaction or identity",
        )
    try:
        identity = parse_identity(payload.identity)
        transaction = deserialize_from_relay(payload.transaction)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    signature = await relayer.relay(transaction, str(identity))
    return RelayResponse(signature=signature, status="success")
