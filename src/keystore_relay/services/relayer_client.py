"""HTTP client for a remote keystore relay."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from keystore_relay.core.errors import (
    RateLimitExceededError,
    RpcError,
    SubmissionFailedError,
    ValidationError,
)
from keystore_relay.core.settings import settings
from keystore_relay.core.transaction import serialize_for_relay

# Configure logger for this module
logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_TOO_MANY_REQUESTS = 429


@dataclass(frozen=True)
class RelayerClientConfig:
    """Immutable configuration for relay access."""

    base_url: str
    timeout_seconds: float


def load_relayer_client_config() -> RelayerClientConfig:
    """Build configuration object from global settings."""
    base_url = settings.relayer_url or f"http://localhost:{settings.port}"
    return RelayerClientConfig(
        base_url=base_url.rstrip("/"),
        timeout_seconds=float(settings.rpc_timeout_seconds),
    )


class RelayerClient:
    """Async client for the relay's HTTP API."""

    def __init__(self, config: RelayerClientConfig | None = None) -> None:
        self.config = config or load_relayer_client_config()
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                )
        return self._client

    async def _get_json(self, path: str) -> dict[str, Any]:
        client = await self._ensure_client()
        try:
            response = await client.get(path)
        except httpx.HTTPError as exc:
            raise RpcError(f"Relay GET {path} failed: {exc}") from exc
        if response.status_code != HTTP_OK:
            raise RpcError(
                f"Relay GET {path} responded with HTTP {response.status_code}: "
                f"{_error_message(response)}"
            )
        return dict(response.json())

    async def relay_transaction(self, transaction: Transaction, identity: Pubkey) -> str:
        """Hand ``transaction`` to the relay and return the submitted signature.

        Raises:
            ValidationError: If the relay rejected the request body.
            RateLimitExceededError: If ``identity`` is over its limits.
            SubmissionFailedError: For any other relay-side failure.
        """
        client = await self._ensure_client()
        payload = {
            "transaction": serialize_for_relay(transaction),
            "identity": str(identity),
        }
        try:
            response = await client.post("/relay", json=payload)
        except httpx.HTTPError as exc:
            raise SubmissionFailedError(f"Relay unreachable: {exc}") from exc

        if response.status_code == HTTP_OK:
            return str(response.json()["signature"])

        message = _error_message(response)
        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            raise RateLimitExceededError(str(identity), message)
        if response.status_code == HTTP_BAD_REQUEST:
            raise ValidationError(message)
        raise SubmissionFailedError(message)

    async def check_health(self) -> bool:
        """Return True if the relay answers ``/health`` with ``status: ok``."""
        try:
            body = await self._get_json("/health")
        except RpcError as exc:
            logger.warning("Relay health check failed: %s", exc)
            return False
        return body.get("status") == "ok"

    async def get_balance(self) -> float:
        """Return the relay's fee-payer balance in SOL."""
        body = await self._get_json("/balance")
        return float(body["balance"])

    async def get_stats(self) -> dict[str, Any]:
        """Return the relay's ``/stats`` payload."""
        return await self._get_json("/stats")

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"
