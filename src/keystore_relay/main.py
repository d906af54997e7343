# src/keystore_relay/main.py
"""Main entry point for the keystore relay service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keystore_relay.api.v1 import relay_router
from keystore_relay.core.errors import KeystoreError, RateLimitExceededError, RpcError
from keystore_relay.core.settings import settings
from keystore_relay.services.relayer import (
    current_relayer_service,
    get_relayer_service,
    reset_relayer_service,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Configure logger for this module
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Keystore Relay",
    description="Fee-sponsoring relay for biometric multi-device keystore wallets",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Relay routes live at the root, not under a version prefix
app.include_router(relay_router)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, "Malformed request body")


@app.exception_handler(RateLimitExceededError)
async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded")


@app.exception_handler(KeystoreError)
async def keystore_error_handler(request: Request, exc: KeystoreError) -> JSONResponse:
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


@app.on_event("startup")
async def on_startup() -> None:
    if not settings.relayer_private_key:
        logger.warning("RELAYER_PRIVATE_KEY is not set; relay endpoints will fail")
        return
    relayer = get_relayer_service()
    logger.info("Relayer service running on port %d", settings.port)
    logger.info("Network: %s", relayer.network)
    try:
        if not await relayer.has_sufficient_balance():
            logger.warning(
                "Relayer %s holds less than %.2f SOL",
                relayer.public_key,
                settings.min_relayer_balance_sol,
            )
    except RpcError as exc:
        logger.warning("Could not read relayer balance: %s", exc)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    relayer = current_relayer_service()
    if relayer is not None:
        logger.info("Shutting down relayer")
        await relayer.close()
        reset_relayer_service()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run("keystore_relay.main:app", host=settings.host, port=settings.port, reload=settings.debug)


if __name__ == "__main__":
    run()
