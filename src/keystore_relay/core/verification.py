"""Builder for secp256r1 signature-verification precompile instructions.

The keystore program inspects the instructions that precede ``execute`` and
checks each one against this layout, byte for byte::

    0      u8      signature count (always 1)
    1..3   u16 LE  signature offset
    3      u8      0xff
    4..6   u16 LE  public key offset
    6      u8      0xff
    7..9   u16 LE  digest offset
    9..11  u16 LE  digest length
    11     u8      0xff
    12     [u8; 64] signature r||s
    76     [u8; 33] compressed public key
    109    [u8; 32] sha256(message)

A mismatch is not an error the precompile reports usefully; it just rejects.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Final

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from keystore_relay.core.account import PUBLIC_KEY_LENGTH
from keystore_relay.core.errors import ValidationError
from keystore_relay.core.signatures import RAW_SIGNATURE_LENGTH
from keystore_relay.utils.hash import SHA256_DIGEST_LENGTH, sha256_digest

SECP256R1_PROGRAM_ID: Final[Pubkey] = Pubkey.from_string(
    "Secp256r1SigVerify1111111111111111111111111"
)

HEADER_SIZE: Final[int] = 12
SIGNATURE_OFFSET: Final[int] = HEADER_SIZE
PUBLIC_KEY_OFFSET: Final[int] = SIGNATURE_OFFSET + RAW_SIGNATURE_LENGTH
DIGEST_OFFSET: Final[int] = PUBLIC_KEY_OFFSET + PUBLIC_KEY_LENGTH
INSTRUCTION_DATA_SIZE: Final[int] = DIGEST_OFFSET + SHA256_DIGEST_LENGTH
PADDING_SENTINEL: Final[int] = 0xFF

_HEADER = struct.Struct("<BHBHBHHB")


@dataclass(frozen=True)
class VerificationOffsets:
    """Offsets read back out of a verification instruction header."""

    signature_count: int
    signature_offset: int
    public_key_offset: int
    digest_offset: int
    digest_length: int


def build_verification_data(public_key: bytes, message: bytes, signature: bytes) -> bytes:
    """Pack a single-signature verification payload.

    Args:
        public_key: 33-byte compressed P-256 key of the signer.
        message: The signed message; only its SHA-256 digest is embedded.
        signature: 64-byte normalized ``r||s`` signature.

    Returns:
        Instruction data of ``INSTRUCTION_DATA_SIZE`` bytes.
    """
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise ValidationError(f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}")
    if len(signature) != RAW_SIGNATURE_LENGTH:
        raise ValidationError(
            f"Signature must be {RAW_SIGNATURE_LENGTH} normalized bytes, got {len(signature)}"
        )

    digest = sha256_digest(bytes(message))
    header = _HEADER.pack(
        1,
        SIGNATURE_OFFSET,
        PADDING_SENTINEL,
        PUBLIC_KEY_OFFSET,
        PADDING_SENTINEL,
        DIGEST_OFFSET,
        len(digest),
        PADDING_SENTINEL,
    )
    return header + bytes(signature) + bytes(public_key) + digest


def build_verification_instruction(
    public_key: bytes, message: bytes, signature: bytes
) -> Instruction:
    """Return the precompile instruction verifying ``signature`` over ``message``."""
    return Instruction(
        SECP256R1_PROGRAM_ID,
        build_verification_data(public_key, message, signature),
        [],
    )


def parse_verification_offsets(data: bytes) -> VerificationOffsets:
    """Read the header of verification instruction data."""
    if len(data) < HEADER_SIZE:
        raise ValidationError("Verification instruction shorter than its header")
    count, sig_off, _, pk_off, _, digest_off, digest_len, _ = _HEADER.unpack(data[:HEADER_SIZE])
    return VerificationOffsets(
        signature_count=count,
        signature_offset=sig_off,
        public_key_offset=pk_off,
        digest_offset=digest_off,
        digest_length=digest_len,
    )
