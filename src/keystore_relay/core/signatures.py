"""Device signature normalization and multi-device aggregation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from keystore_relay.core.account import PUBLIC_KEY_LENGTH, IdentityAccount
from keystore_relay.core.errors import (
    DuplicateSignerError,
    InsufficientSignaturesError,
    SignatureFormatError,
    ValidationError,
)

RAW_SIGNATURE_LENGTH: Final[int] = 64
SCALAR_LENGTH: Final[int] = 32
UNCOMPRESSED_PUBLIC_KEY_LENGTH: Final[int] = 65
MAX_KEY_INDEX: Final[int] = 0xFF

# Order of the NIST P-256 group.
P256_ORDER: Final[int] = int(
    "FFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551", 16
)
_SCALAR_MASK: Final[int] = (1 << (8 * SCALAR_LENGTH)) - 1


def _looks_like_der(signature: bytes) -> bool:
    return len(signature) >= 8 and signature[0] == 0x30 and signature[1] == len(signature) - 2


def _read_der_integer(data: bytes, offset: int) -> tuple[int, int] | None:
    if offset + 2 > len(data) or data[offset] != 0x02:
        return None
    length = data[offset + 1]
    start = offset + 2
    if length == 0 or start + length > len(data):
        return None
    return int.from_bytes(data[start : start + length], "big"), start + length


def _decode_der_lenient(signature: bytes) -> tuple[int, int] | None:
    """Length-driven parse that tolerates non-minimal integer padding."""
    r = _read_der_integer(signature, 2)
    if r is None:
        return None
    s = _read_der_integer(signature, r[1])
    if s is None or s[1] != len(signature):
        return None
    return r[0], s[0]


def _decode_der(signature: bytes) -> tuple[int, int] | None:
    try:
        return decode_dss_signature(signature)
    except ValueError:
        # Some secure enclaves emit extra leading zero bytes that strict DER rejects.
        return _decode_der_lenient(signature)


def normalize_signature(signature: bytes, *, low_s: bool = False) -> bytes:
    """Normalize a device signature to the fixed 64-byte ``r||s`` form.

    Secure enclaves hand back ASN.1 DER
    (``0x30 len 0x02 rlen r 0x02 slen s``). Each integer is left-padded with
    zeros to 32 bytes and any sign-padding byte beyond 32 is dropped. Input
    that is already 64 raw bytes is returned unchanged.

    Args:
        signature: DER-encoded or raw signature bytes.
        low_s: Fold ``s`` into the lower half of the curve order, which the
            secp256r1 precompile requires.

    Returns:
        64 bytes of ``r || s``.

    Raises:
        SignatureFormatError: If the input is neither DER nor raw.
    """
    signature = bytes(signature)
    decoded = _decode_der(signature) if _looks_like_der(signature) else None
    if decoded is not None:
        # Integers wider than 32 bytes keep their low-order 32 bytes.
        r = decoded[0] & _SCALAR_MASK
        s = decoded[1] & _SCALAR_MASK
    elif len(signature) == RAW_SIGNATURE_LENGTH:
        if not low_s:
            return signature
        r = int.from_bytes(signature[:SCALAR_LENGTH], "big")
        s = int.from_bytes(signature[SCALAR_LENGTH:], "big")
    elif _looks_like_der(signature):
        raise SignatureFormatError("Malformed DER signature")
    else:
        raise SignatureFormatError(
            f"Signature must be DER or {RAW_SIGNATURE_LENGTH} raw bytes, got {len(signature)}"
        )

    if low_s and s > P256_ORDER // 2:
        s = P256_ORDER - s
    return r.to_bytes(SCALAR_LENGTH, "big") + s.to_bytes(SCALAR_LENGTH, "big")


def compress_public_key(public_key: bytes) -> bytes:
    """Return the 33-byte compressed SEC1 form of a P-256 public key.

    Devices export uncompressed points (``0x04 || x || y``); registered keys
    are compressed. Already-compressed keys are validated and returned as-is.
    """
    public_key = bytes(public_key)
    if len(public_key) not in (PUBLIC_KEY_LENGTH, UNCOMPRESSED_PUBLIC_KEY_LENGTH):
        raise ValidationError(
            f"Public key must be {PUBLIC_KEY_LENGTH} or "
            f"{UNCOMPRESSED_PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}"
        )
    try:
        point = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), public_key)
    except ValueError as err:
        raise ValidationError(f"Invalid P-256 public key: {err}") from err
    return point.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )


@dataclass(frozen=True)
class SignerSignature:
    """A normalized signature attributed to a registered key index."""

    key_index: int
    signature: bytes


class SignatureAggregator:
    """Collect device signatures for a single pending action.

    The threshold is authoritative on-chain; ``finalize`` only pre-checks it
    so a doomed transaction never reaches the relay.
    """

    def __init__(self, *, low_s: bool = False) -> None:
        self._signatures: dict[int, bytes] = {}
        self._low_s = low_s

    def __len__(self) -> int:
        return len(self._signatures)

    def add(self, key_index: int, signature: bytes) -> None:
        """Record a signature from the device registered at ``key_index``."""
        if not 0 <= key_index <= MAX_KEY_INDEX:
            raise ValidationError(f"Key index {key_index} does not fit in u8")
        if key_index in self._signatures:
            raise DuplicateSignerError(key_index)
        self._signatures[key_index] = normalize_signature(signature, low_s=self._low_s)

    def check_against(self, account: IdentityAccount) -> None:
        """Validate collected signatures against the identity's key set.

        Raises:
            ValidationError: If a key index is not registered.
            InsufficientSignaturesError: If fewer than ``threshold`` signed.
        """
        for key_index in self._signatures:
            if key_index >= len(account.keys):
                raise ValidationError(
                    f"Key index {key_index} out of range for {len(account.keys)} registered keys"
                )
        if len(self._signatures) < account.threshold:
            raise InsufficientSignaturesError(len(self._signatures), account.threshold)

    def finalize(self, account: IdentityAccount | None = None) -> list[SignerSignature]:
        """Return signatures in the order they were added.

        Args:
            account: When given, run ``check_against`` first.
        """
        if account is not None:
            self.check_against(account)
        return [
            SignerSignature(key_index=index, signature=sig)
            for index, sig in self._signatures.items()
        ]
