"""Hashing helpers for the keystore wire formats."""

from __future__ import annotations

import hashlib

SHA256_DIGEST_LENGTH = 32


def sha256_digest(data: bytes) -> bytes:
    """Return the SHA-256 digest of the supplied data."""
    return hashlib.sha256(data).digest()


def anchor_discriminator(namespace: str, name: str) -> bytes:
    """Return the 8-byte Anchor discriminator for ``namespace:name``.

    Instructions use the ``global`` namespace and accounts use ``account``
    with the CamelCase struct name.
    """
    return sha256_digest(f"{namespace}:{name}".encode())[:8]
