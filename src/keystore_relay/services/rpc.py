"""Solana JSON-RPC client used by the relay and the wallet client.

Only the handful of methods the keystore flow needs are wrapped. Every call
goes through ``SolanaRpcClient._request`` which turns transport failures and
JSON-RPC error objects into ``RpcError`` with the original diagnostic.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from keystore_relay.core.errors import RpcError, SubmissionFailedError
from keystore_relay.core.settings import settings

# Configure logger for this module
logger = logging.getLogger(__name__)

HTTP_OK = 200
CONFIRMED_COMMITMENTS = frozenset({"confirmed", "finalized"})


@dataclass(frozen=True)
class RpcConfig:
    """Immutable configuration for JSON-RPC access."""

    url: str
    timeout_seconds: float
    commitment: str = "confirmed"


@dataclass(frozen=True)
class LatestBlockhash:
    """A recent blockhash and the last block height it stays valid for."""

    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    """Status of a submitted transaction signature."""

    slot: int
    confirmations: int | None
    err: Any
    confirmation_status: str | None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation_status in CONFIRMED_COMMITMENTS


def load_rpc_config() -> RpcConfig:
    """Build configuration object from global settings."""
    return RpcConfig(
        url=settings.solana_rpc_url,
        timeout_seconds=float(settings.rpc_timeout_seconds),
    )


class SolanaRpcClient:
    """Async JSON-RPC client wrapper for a Solana cluster."""

    def __init__(self, config: RpcConfig | None = None) -> None:
        self.config = config or load_rpc_config()
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers={"Content-Type": "application/json"},
                )
        return self._client

    async def _request(self, method: str, params: list[Any] | None = None) -> Any:
        client = await self._ensure_client()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = await client.post(self.config.url, json=payload)
        except httpx.HTTPError as exc:
            raise RpcError(f"RPC {method} failed: {exc}") from exc

        if response.status_code != HTTP_OK:
            raise RpcError(f"RPC {method} responded with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise RpcError(f"RPC {method} returned invalid JSON") from exc

        error = body.get("error")
        if error:
            raise RpcError(
                str(error.get("message", "unknown RPC error")),
                code=error.get("code"),
                data=error.get("data"),
            )
        return body.get("result")

    async def get_latest_blockhash(self) -> LatestBlockhash:
        """Fetch a fresh blockhash at the configured commitment."""
        result = await self._request(
            "getLatestBlockhash", [{"commitment": self.config.commitment}]
        )
        value = result["value"]
        return LatestBlockhash(
            blockhash=Hash.from_string(value["blockhash"]),
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    async def send_transaction(self, transaction: Transaction, *, skip_preflight: bool = False) -> str:
        """Submit a signed transaction and return its base58 signature.

        Raises:
            SubmissionFailedError: If the node or the program rejected it,
                carrying the RPC message and any simulation logs.
        """
        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        try:
            return str(
                await self._request(
                    "sendTransaction",
                    [
                        encoded,
                        {
                            "encoding": "base64",
                            "skipPreflight": skip_preflight,
                            "preflightCommitment": self.config.commitment,
                        },
                    ],
                )
            )
        except RpcError as exc:
            raise SubmissionFailedError(str(exc), data=exc.data) from exc

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        """Return the status of ``signature`` or ``None`` if the node has not seen it."""
        result = await self._request(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": False}]
        )
        values = result.get("value") or [None]
        status = values[0]
        if status is None:
            return None
        return SignatureStatus(
            slot=int(status.get("slot", 0)),
            confirmations=status.get("confirmations"),
            err=status.get("err"),
            confirmation_status=status.get("confirmationStatus"),
        )

    async def get_block_height(self) -> int:
        """Return the current block height at the configured commitment."""
        return int(await self._request("getBlockHeight", [{"commitment": self.config.commitment}]))

    async def get_balance(self, address: Pubkey) -> int:
        """Return the lamport balance of ``address``."""
        result = await self._request(
            "getBalance", [str(address), {"commitment": self.config.commitment}]
        )
        return int(result["value"])

    async def get_account_data(self, address: Pubkey) -> bytes | None:
        """Return raw account data for ``address`` or ``None`` if it does not exist."""
        result = await self._request(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self.config.commitment}],
        )
        value = result.get("value")
        if value is None:
            return None
        data, encoding = value["data"]
        if encoding != "base64":
            raise RpcError(f"Unexpected account encoding {encoding!r}")
        return base64.b64decode(data)

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
