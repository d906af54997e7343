"""Bounded polling confirmation for submitted transactions.

The relay runs where no persistent websocket is available, so confirmation is
an explicit loop over ``getSignatureStatuses`` and ``getBlockHeight``::

    PENDING -> CONFIRMED | FAILED | EXPIRED | TIMEOUT

EXPIRED means the blockhash is no longer valid and the action must be rebuilt
from a re-read nonce. TIMEOUT is not a failure: the transaction may still
land, so callers re-check its status before giving up on it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from keystore_relay.core.errors import (
    BlockhashExpiredError,
    ConfirmationTimeoutError,
    SubmissionFailedError,
)
from keystore_relay.core.settings import settings
from keystore_relay.services.rpc import SignatureStatus

# Configure logger for this module
logger = logging.getLogger(__name__)


class ConfirmationStatus(Enum):
    """Terminal states of a confirmation round."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ConfirmationOutcome:
    """Result of ``ConfirmationPoller.confirm``."""

    signature: str
    status: ConfirmationStatus
    attempts: int
    expiry_block_height: int
    reason: Any = None

    @property
    def confirmed(self) -> bool:
        return self.status is ConfirmationStatus.CONFIRMED

    def raise_for_status(self) -> None:
        """Raise the error matching a non-confirmed outcome."""
        if self.status is ConfirmationStatus.FAILED:
            raise SubmissionFailedError(str(self.reason), data=self.reason)
        if self.status is ConfirmationStatus.EXPIRED:
            raise BlockhashExpiredError(self.signature, self.expiry_block_height)
        if self.status is ConfirmationStatus.TIMEOUT:
            raise ConfirmationTimeoutError(self.signature, self.attempts)


class StatusSource(Protocol):
    """Subset of the RPC client the poller depends on."""

    async def get_signature_status(self, signature: str) -> SignatureStatus | None: ...

    async def get_block_height(self) -> int: ...


class ConfirmationPoller:
    """Poll a signature until it resolves, its blockhash expires, or attempts run out."""

    def __init__(
        self,
        rpc: StatusSource,
        *,
        interval_seconds: float | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._rpc = rpc
        self.interval_seconds = max(
            0.0,
            float(
                settings.confirmation_poll_interval_seconds
                if interval_seconds is None
                else interval_seconds
            ),
        )
        self.max_attempts = max(
            1, int(settings.confirmation_max_attempts if max_attempts is None else max_attempts)
        )
        self._sleep = sleep

    async def confirm(self, signature: str, expiry_block_height: int) -> ConfirmationOutcome:
        """Wait for ``signature`` to reach confirmed commitment.

        Args:
            signature: Base58 transaction signature.
            expiry_block_height: ``lastValidBlockHeight`` of the blockhash used.

        Returns:
            The terminal ``ConfirmationOutcome``.
        """
        for attempt in range(1, self.max_attempts + 1):
            status = await self._rpc.get_signature_status(signature)
            if status is not None and status.err is not None:
                logger.warning("Transaction %s failed: %s", signature, status.err)
                return self._outcome(
                    signature, ConfirmationStatus.FAILED, attempt, expiry_block_height, status.err
                )
            if status is not None and status.is_confirmed:
                logger.debug("Transaction %s confirmed after %d polls", signature, attempt)
                return self._outcome(
                    signature, ConfirmationStatus.CONFIRMED, attempt, expiry_block_height
                )

            block_height = await self._rpc.get_block_height()
            if block_height > expiry_block_height:
                logger.warning(
                    "Transaction %s expired at block height %d (valid through %d)",
                    signature,
                    block_height,
                    expiry_block_height,
                )
                return self._outcome(
                    signature, ConfirmationStatus.EXPIRED, attempt, expiry_block_height
                )

            if attempt < self.max_attempts:
                await self._sleep(self.interval_seconds)

        logger.warning(
            "Confirmation of %s undetermined after %d polls", signature, self.max_attempts
        )
        return self._outcome(
            signature, ConfirmationStatus.TIMEOUT, self.max_attempts, expiry_block_height
        )

    @staticmethod
    def _outcome(
        signature: str,
        status: ConfirmationStatus,
        attempts: int,
        expiry_block_height: int,
        reason: Any = None,
    ) -> ConfirmationOutcome:
        return ConfirmationOutcome(
            signature=signature,
            status=status,
            attempts=attempts,
            expiry_block_height=expiry_block_height,
            reason=reason,
        )
