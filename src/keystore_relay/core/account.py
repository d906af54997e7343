"""Codec for the on-chain identity account.

The identity account is owned by the keystore program, so this core only
ever reads it. Layout after the 8-byte Anchor discriminator::

    bump            u8
    vault_bump      u8
    threshold       u8
    nonce           u64 LE
    key_count       u32 LE
    key_count x {
        public_key  [u8; 33]
        name_len    u32 LE
        name        utf-8, name_len bytes
        added_at    i64 LE
    }

``encode_identity_account`` is the exact inverse and exists for fixtures and
tooling; nothing in the relay path writes this account.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from keystore_relay.core.errors import DecodeError, ValidationError
from keystore_relay.utils.hash import anchor_discriminator

ACCOUNT_DISCRIMINATOR_LENGTH = 8
PUBLIC_KEY_LENGTH = 33
MAX_KEYS = 5
MAX_NAME_LENGTH = 32
IDENTITY_DISCRIMINATOR = anchor_discriminator("account", "Identity")

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")


@dataclass(frozen=True)
class RegisteredKey:
    """A device key registered on an identity."""

    public_key: bytes
    name: str
    added_at: int


@dataclass(frozen=True)
class IdentityAccount:
    """Decoded identity account state."""

    bump: int
    vault_bump: int
    threshold: int
    nonce: int
    keys: tuple[RegisteredKey, ...] = field(default_factory=tuple)

    def public_key_for(self, key_index: int) -> bytes:
        """Return the registered public key at ``key_index``."""
        if not 0 <= key_index < len(self.keys):
            raise ValidationError(
                f"Key index {key_index} out of range for {len(self.keys)} registered keys"
            )
        return self.keys[key_index].public_key

    def validate(self) -> None:
        """Check the invariants the program enforces, before paying to submit.

        Raises:
            ValidationError: If the threshold is unreachable or keys repeat.
        """
        if len(self.keys) > MAX_KEYS:
            raise ValidationError(f"Identity holds more than {MAX_KEYS} keys")
        if self.threshold < 1:
            raise ValidationError("Identity threshold must be at least 1")
        if self.threshold > len(self.keys):
            raise ValidationError(
                f"Identity threshold {self.threshold} exceeds {len(self.keys)} registered keys"
            )
        seen: set[bytes] = set()
        for key in self.keys:
            if key.public_key in seen:
                raise ValidationError("Identity has duplicate registered public keys")
            seen.add(key.public_key)


class _Reader:
    """Bounds-checked cursor over an account buffer."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = memoryview(data)
        self.offset = offset

    def take(self, length: int, what: str) -> bytes:
        end = self.offset + length
        if length < 0 or end > len(self._data):
            raise DecodeError(
                f"Account data truncated reading {what}: need {length} bytes at "
                f"offset {self.offset}, have {len(self._data) - self.offset}"
            )
        chunk = self._data[self.offset:end].tobytes()
        self.offset = end
        return chunk

    def unpack(self, fmt: struct.Struct, what: str) -> int:
        return int(fmt.unpack(self.take(fmt.size, what))[0])


def decode_identity_account(data: bytes) -> IdentityAccount:
    """Decode raw identity account bytes.

    Args:
        data: Full account data including the leading discriminator.

    Returns:
        The decoded ``IdentityAccount``.

    Raises:
        DecodeError: If the buffer is shorter than any declared length or a
            name is not valid UTF-8.
    """
    if len(data) < ACCOUNT_DISCRIMINATOR_LENGTH:
        raise DecodeError("Account data shorter than its discriminator")

    reader = _Reader(data, ACCOUNT_DISCRIMINATOR_LENGTH)
    bump = reader.unpack(_U8, "bump")
    vault_bump = reader.unpack(_U8, "vault bump")
    threshold = reader.unpack(_U8, "threshold")
    nonce = reader.unpack(_U64, "nonce")
    key_count = reader.unpack(_U32, "key count")

    keys: list[RegisteredKey] = []
    for index in range(key_count):
        public_key = reader.take(PUBLIC_KEY_LENGTH, f"public key {index}")
        name_len = reader.unpack(_U32, f"name length {index}")
        raw_name = reader.take(name_len, f"name {index}")
        try:
            name = raw_name.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecodeError(f"Key {index} name is not valid UTF-8") from err
        added_at = reader.unpack(_I64, f"added_at {index}")
        keys.append(RegisteredKey(public_key=public_key, name=name, added_at=added_at))

    return IdentityAccount(
        bump=bump,
        vault_bump=vault_bump,
        threshold=threshold,
        nonce=nonce,
        keys=tuple(keys),
    )


def encode_identity_account(
    account: IdentityAccount,
    discriminator: bytes = IDENTITY_DISCRIMINATOR,
) -> bytes:
    """Encode an identity account in the program's layout."""
    if len(discriminator) != ACCOUNT_DISCRIMINATOR_LENGTH:
        raise ValidationError("Account discriminator must be 8 bytes")

    parts = [
        discriminator,
        _U8.pack(account.bump),
        _U8.pack(account.vault_bump),
        _U8.pack(account.threshold),
        _U64.pack(account.nonce),
        _U32.pack(len(account.keys)),
    ]
    for key in account.keys:
        if len(key.public_key) != PUBLIC_KEY_LENGTH:
            raise ValidationError("Registered public keys must be 33 bytes")
        name = key.name.encode("utf-8")
        parts.extend((key.public_key, _U32.pack(len(name)), name, _I64.pack(key.added_at)))
    return b"".join(parts)
