"""Canonical encoding of the action + nonce message devices sign.

The keystore program recomputes these bytes independently, so the encoding
is a wire contract::

    tag             u8      0 = Send, 1 = SetThreshold
    Send:           recipient [u8; 32], lamports u64 LE
    SetThreshold:   threshold u8
    nonce           u64 LE

The nonce is always the identity's current on-chain nonce. Execution compares
it for exact equality, which blocks replay and stale concurrent approvals.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import ClassVar, Final

from solders.pubkey import Pubkey

from keystore_relay.core.account import IdentityAccount
from keystore_relay.core.errors import StaleNonceError, ValidationError

SEND_TAG: Final[int] = 0
SET_THRESHOLD_TAG: Final[int] = 1
U64_MAX: Final[int] = 2**64 - 1

_U64 = struct.Struct("<Q")


@dataclass(frozen=True)
class SendAction:
    """Transfer lamports from the vault to ``to``."""

    to: Pubkey
    lamports: int

    tag: ClassVar[int] = SEND_TAG

    def encode(self) -> bytes:
        if not 0 <= self.lamports <= U64_MAX:
            raise ValidationError(f"Lamport amount {self.lamports} does not fit in u64")
        return bytes([self.tag]) + bytes(self.to) + _U64.pack(self.lamports)


@dataclass(frozen=True)
class SetThresholdAction:
    """Change the number of signatures required by the identity."""

    threshold: int

    tag: ClassVar[int] = SET_THRESHOLD_TAG

    def encode(self) -> bytes:
        if not 1 <= self.threshold <= 0xFF:
            raise ValidationError(f"Threshold {self.threshold} must be between 1 and 255")
        return bytes([self.tag, self.threshold])


Action = SendAction | SetThresholdAction


def encode_action(action: Action) -> bytes:
    """Return the tagged action bytes without the nonce suffix."""
    if not isinstance(action, (SendAction, SetThresholdAction)):
        raise ValidationError(f"Unsupported action type: {type(action).__name__}")
    return action.encode()


def build_message(action: Action, nonce: int) -> bytes:
    """Build the exact byte sequence a device signs for ``action`` at ``nonce``.

    Args:
        action: The action to authorize.
        nonce: The identity's current on-chain nonce.

    Returns:
        Deterministic message bytes.

    Raises:
        ValidationError: If a field does not fit its wire width.
    """
    if not 0 <= nonce <= U64_MAX:
        raise ValidationError(f"Nonce {nonce} does not fit in u64")
    return encode_action(action) + _U64.pack(nonce)


@dataclass(frozen=True)
class PendingAction:
    """An action bound to the nonce it will be signed against."""

    action: Action
    nonce: int

    @classmethod
    def for_account(cls, action: Action, account: IdentityAccount) -> PendingAction:
        """Bind ``action`` to the account's current nonce."""
        return cls(action=action, nonce=account.nonce)

    @property
    def message(self) -> bytes:
        return build_message(self.action, self.nonce)

    def is_stale(self, account: IdentityAccount) -> bool:
        """Return True once the on-chain nonce no longer equals the signed one."""
        return account.nonce != self.nonce

    def ensure_current(self, account: IdentityAccount) -> None:
        """Raise ``StaleNonceError`` if the account has moved past this action."""
        if self.is_stale(account):
            raise StaleNonceError(self.nonce, account.nonce)
