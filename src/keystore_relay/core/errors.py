"""Error taxonomy shared by the protocol codecs, the relay and the wallet client.

Local and structural errors are raised before any signing or network call.
Network and program errors carry the original diagnostic. Storage errors are
recovered inside the rate limiter and never reach a caller.
"""

from __future__ import annotations

from typing import Any


class KeystoreError(Exception):
    """Base exception for all keystore protocol and relay failures."""


class DecodeError(KeystoreError):
    """Raised when an on-chain account buffer is truncated or corrupt."""


class ValidationError(KeystoreError):
    """Raised for malformed request fields, addresses or field ranges."""


class SignatureFormatError(ValidationError):
    """Raised when a device signature is neither DER nor raw ``r||s``."""


class DuplicateSignerError(KeystoreError):
    """Raised when the same key index signs a pending action twice."""

    def __init__(self, key_index: int) -> None:
        self.key_index = key_index
        super().__init__(f"Key index {key_index} already signed this action")


class InsufficientSignaturesError(KeystoreError):
    """Raised locally when fewer signatures than the threshold were collected."""

    def __init__(self, collected: int, threshold: int) -> None:
        self.collected = collected
        self.threshold = threshold
        super().__init__(
            f"Insufficient signatures: collected {collected}, threshold is {threshold}"
        )


class StaleNonceError(KeystoreError):
    """Raised when a pending action embeds a nonce the account has moved past."""

    def __init__(self, signed_nonce: int, current_nonce: int) -> None:
        self.signed_nonce = signed_nonce
        self.current_nonce = current_nonce
        super().__init__(
            f"Pending action signed for nonce {signed_nonce}, account is at {current_nonce}"
        )


class TooLargeError(KeystoreError):
    """Raised when a serialized transaction exceeds the packet ceiling."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Transaction too large: {size} bytes (limit {limit})")


class NoInstructionsError(KeystoreError):
    """Raised when a transaction carries no instructions."""

    def __init__(self, message: str = "Transaction has no instructions") -> None:
        super().__init__(message)


class RateLimitExceededError(KeystoreError):
    """Raised when an identity exceeded one of its request windows."""

    def __init__(self, identity: str, window: str) -> None:
        self.identity = identity
        self.window = window
        super().__init__(f"Rate limit exceeded for {identity} ({window})")


class RpcError(KeystoreError):
    """Raised when the JSON-RPC endpoint is unreachable or answers with an error."""

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        self.code = code
        self.data = data
        super().__init__(message)


class SubmissionFailedError(KeystoreError):
    """Raised when the network or the program rejected a transaction."""

    def __init__(self, reason: str, *, data: Any = None) -> None:
        self.reason = reason
        self.data = data
        super().__init__(f"Transaction submission failed: {reason}")


class BlockhashExpiredError(KeystoreError):
    """Raised when a transaction's blockhash outlived its validity window.

    The action must be rebuilt from a freshly read nonce and blockhash, not
    resent verbatim.
    """

    def __init__(self, signature: str, expiry_block_height: int) -> None:
        self.signature = signature
        self.expiry_block_height = expiry_block_height
        super().__init__(
            f"Transaction {signature} expired after block height {expiry_block_height}"
        )


class ConfirmationTimeoutError(KeystoreError):
    """Raised when confirmation stayed undetermined after all poll attempts.

    The transaction may still land; re-query its status before assuming loss.
    """

    def __init__(self, signature: str, attempts: int) -> None:
        self.signature = signature
        self.attempts = attempts
        super().__init__(f"Confirmation of {signature} undetermined after {attempts} polls")


class StorageUnavailableError(KeystoreError):
    """Raised by a rate-limit store whose backend cannot be reached."""
