"""Fee-sponsoring relay service.

The relay accepts keystore transactions built by untrusted callers, pays their
fees with its own keypair and submits them. It never holds user keys: the
device signatures inside the transaction are what authorize the action, and
the relay's signature only covers the fee.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Final

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from keystore_relay.core.errors import (
    KeystoreError,
    NoInstructionsError,
    RateLimitExceededError,
    ValidationError,
)
from keystore_relay.core.settings import settings
from keystore_relay.core.transaction import (
    deserialize_from_relay,
    ensure_within_size,
    rebuild_with_fee_payer,
)
from keystore_relay.services.confirmation import ConfirmationOutcome, ConfirmationPoller
from keystore_relay.services.rate_limit import RateLimiter
from keystore_relay.services.rpc import SolanaRpcClient

# Configure logger for this module
logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL: Final[int] = 1_000_000_000
_MS_PER_HOUR: Final[int] = 3_600_000


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def parse_identity(identity: str) -> Pubkey:
    """Parse a base58 identity address supplied by a caller."""
    if not identity or not isinstance(identity, str):
        raise ValidationError("Identity address is required")
    try:
        return Pubkey.from_string(identity)
    except ValueError as exc:
        raise ValidationError(f"Invalid identity address: {identity!r}") from exc


def load_keypair(secret: str) -> Keypair:
    """Load the relay keypair from a JSON byte array or a base58 string.

    The JSON form is what ``solana-keygen`` writes: 64 bytes of secret key
    followed by public key. A 32-byte array is treated as a seed.
    """
    secret = secret.strip()
    if not secret:
        raise ValidationError("Relayer private key is empty")
    if secret.startswith("["):
        try:
            raw = bytes(json.loads(secret))
        except (ValueError, TypeError) as exc:
            raise ValidationError("Relayer private key is not a JSON byte array") from exc
        if len(raw) == 32:
            return Keypair.from_seed(raw)
        if len(raw) == 64:
            return Keypair.from_bytes(raw)
        raise ValidationError(f"Relayer private key must be 32 or 64 bytes, got {len(raw)}")
    try:
        return Keypair.from_base58_string(secret)
    except ValueError as exc:
        raise ValidationError("Relayer private key is not valid base58") from exc


@dataclass
class RelayStats:
    """Counters kept for the ``/stats`` endpoint."""

    transactions_relayed: int = 0
    total_fees_lamports: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def record(self, fee_lamports: int) -> None:
        self.transactions_relayed += 1
        self.total_fees_lamports += fee_lamports

    def uptime_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass(frozen=True)
class RelayerHealth:
    status: str
    relayer: str
    network: str


@dataclass(frozen=True)
class RelayerBalance:
    lamports: int

    @property
    def sol(self) -> float:
        return lamports_to_sol(self.lamports)


@dataclass(frozen=True)
class RelayerStatsSnapshot:
    relayer: str
    lamports: int
    transactions_relayed: int
    total_fees_lamports: int
    uptime_ms: int

    @property
    def balance(self) -> float:
        return lamports_to_sol(self.lamports)

    @property
    def total_fees_spent(self) -> float:
        return lamports_to_sol(self.total_fees_lamports)

    @property
    def uptime_hours(self) -> float:
        return self.uptime_ms / _MS_PER_HOUR


class RelayerService:
    """Validate, rate-limit, fee-pay and submit keystore transactions."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        keypair: Keypair,
        rate_limiter: RateLimiter,
        *,
        network: str | None = None,
        estimated_fee_lamports: int | None = None,
        await_confirmation: bool | None = None,
        poller: ConfirmationPoller | None = None,
    ) -> None:
        self._rpc = rpc
        self._keypair = keypair
        self._rate_limiter = rate_limiter
        self.network = network or settings.solana_network
        self.estimated_fee_lamports = (
            settings.estimated_fee_lamports
            if estimated_fee_lamports is None
            else estimated_fee_lamports
        )
        self.await_confirmation = (
            settings.relay_await_confirmation if await_confirmation is None else await_confirmation
        )
        self._poller = poller or ConfirmationPoller(rpc)
        self._stats = RelayStats()
        self._submit_lock = asyncio.Lock()

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def validate(self, transaction: Transaction) -> None:
        """Run the structural checks that need no network access.

        Raises:
            NoInstructionsError: If the transaction is empty.
            TooLargeError: If it exceeds the packet ceiling.
            ValidationError: If it needs a signer other than the relay.
        """
        if not transaction.message.instructions:
            raise NoInstructionsError()
        ensure_within_size(transaction)
        rebuild_with_fee_payer(
            transaction, self.public_key, transaction.message.recent_blockhash
        )

    async def relay(self, transaction: Transaction | str, claimed_identity: str) -> str:
        """Fee-pay and submit ``transaction`` on behalf of ``claimed_identity``.

        Args:
            transaction: Solders transaction or its base64 wire form.
            claimed_identity: Base58 identity address used for rate limiting.

        Returns:
            The base58 transaction signature.

        Raises:
            ValidationError: For a malformed identity or transaction.
            RateLimitExceededError: If the identity is over its limits.
            SubmissionFailedError: If the network rejected the transaction; the
                rate-limit reservation is refunded.
        """
        identity = str(parse_identity(claimed_identity))
        if isinstance(transaction, str):
            transaction = deserialize_from_relay(transaction)
        self.validate(transaction)

        try:
            self._rate_limiter.reserve(identity)
        except RateLimitExceededError:
            logger.warning("Rate limit exceeded for identity %s", identity)
            raise

        try:
            async with self._submit_lock:
                latest = await self._rpc.get_latest_blockhash()
                message = rebuild_with_fee_payer(transaction, self.public_key, latest.blockhash)
                signed = Transaction([self._keypair], message, latest.blockhash)
                ensure_within_size(signed)
                signature = await self._rpc.send_transaction(signed)
        except KeystoreError as exc:
            self._rate_limiter.release(identity)
            logger.error("Relay submission for %s failed: %s", identity, exc)
            raise
        self._stats.record(self.estimated_fee_lamports)

        logger.info("Relayed transaction for %s: %s", identity, signature)

        if self.await_confirmation:
            outcome = await self.confirm(signature, latest.last_valid_block_height)
            outcome.raise_for_status()
        return signature

    async def confirm(self, signature: str, expiry_block_height: int) -> ConfirmationOutcome:
        """Poll ``signature`` to a terminal state."""
        return await self._poller.confirm(signature, expiry_block_height)

    def health(self) -> RelayerHealth:
        return RelayerHealth(status="ok", relayer=str(self.public_key), network=self.network)

    async def balance(self) -> RelayerBalance:
        """Return the relay fee payer's balance."""
        return RelayerBalance(lamports=await self._rpc.get_balance(self.public_key))

    async def stats(self) -> RelayerStatsSnapshot:
        """Return relay counters together with the current balance."""
        lamports = await self._rpc.get_balance(self.public_key)
        return RelayerStatsSnapshot(
            relayer=str(self.public_key),
            lamports=lamports,
            transactions_relayed=self._stats.transactions_relayed,
            total_fees_lamports=self._stats.total_fees_lamports,
            uptime_ms=self._stats.uptime_ms(),
        )

    async def has_sufficient_balance(self, min_sol: float | None = None) -> bool:
        """Return True if the relay holds at least ``min_sol`` SOL."""
        minimum = settings.min_relayer_balance_sol if min_sol is None else min_sol
        balance = await self.balance()
        return balance.lamports >= int(minimum * LAMPORTS_PER_SOL)

    async def close(self) -> None:
        await self._rpc.close()
        self._rate_limiter.close()


class _RelayerServiceSingleton:
    """Singleton wrapper for RelayerService."""

    _instance: RelayerService | None = None

    @classmethod
    def get_instance(cls) -> RelayerService:
        """Get or create the singleton RelayerService instance."""
        if cls._instance is None:
            if not settings.relayer_private_key:
                raise ValidationError("RELAYER_PRIVATE_KEY is not configured")
            rpc = SolanaRpcClient()
            cls._instance = RelayerService(
                rpc,
                load_keypair(settings.relayer_private_key),
                RateLimiter(),
            )
            logger.info("Relayer initialized with pubkey %s", cls._instance.public_key)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def get_relayer_service() -> RelayerService:
    """Return a singleton relayer service instance."""
    return _RelayerServiceSingleton.get_instance()


def current_relayer_service() -> RelayerService | None:
    """Return the singleton if it has been built, without building it."""
    return _RelayerServiceSingleton._instance


def reset_relayer_service() -> None:
    """Drop the singleton so the next access rebuilds it from settings."""
    _RelayerServiceSingleton.reset()
