"""Encoders for the keystore program's instructions and derived addresses."""

from __future__ import annotations

import struct
from collections.abc import Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import INSTRUCTIONS as SYSVAR_INSTRUCTIONS_ID

from keystore_relay.core.account import MAX_NAME_LENGTH, PUBLIC_KEY_LENGTH
from keystore_relay.core.errors import InsufficientSignaturesError, ValidationError
from keystore_relay.core.message import Action, SendAction, encode_action
from keystore_relay.core.settings import settings
from keystore_relay.core.signatures import RAW_SIGNATURE_LENGTH, SignerSignature
from keystore_relay.utils.hash import anchor_discriminator

IDENTITY_SEED = b"identity"
VAULT_SEED = b"vault"

CREATE_IDENTITY_DISCRIMINATOR = anchor_discriminator("global", "create_identity")
ADD_KEY_DISCRIMINATOR = anchor_discriminator("global", "add_key")
EXECUTE_DISCRIMINATOR = anchor_discriminator("global", "execute")

_U32 = struct.Struct("<I")


def keystore_program_id() -> Pubkey:
    """Return the configured keystore program address."""
    return Pubkey.from_string(settings.keystore_program_id)


def identity_address(owner: Pubkey, program_id: Pubkey | None = None) -> tuple[Pubkey, int]:
    """Derive the identity PDA and bump for ``owner``."""
    return Pubkey.find_program_address(
        [IDENTITY_SEED, bytes(owner)], program_id or keystore_program_id()
    )


def vault_address(identity: Pubkey, program_id: Pubkey | None = None) -> tuple[Pubkey, int]:
    """Derive the vault PDA and bump for ``identity``."""
    return Pubkey.find_program_address(
        [VAULT_SEED, bytes(identity)], program_id or keystore_program_id()
    )


def _encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > MAX_NAME_LENGTH:
        raise ValidationError(f"Device name exceeds {MAX_NAME_LENGTH} bytes")
    return _U32.pack(len(raw)) + raw


def _check_public_key(public_key: bytes) -> bytes:
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise ValidationError(f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}")
    return bytes(public_key)


def encode_signatures(signatures: Sequence[SignerSignature]) -> bytes:
    """Encode signatures as a borsh vector of ``(key_index, r||s, recovery_id)``."""
    parts = [_U32.pack(len(signatures))]
    for entry in signatures:
        if len(entry.signature) != RAW_SIGNATURE_LENGTH:
            raise ValidationError("Signatures must be normalized before encoding")
        # secp256r1 verification does not use a recovery id; the program expects 0.
        parts.append(bytes([entry.key_index]) + entry.signature + b"\x00")
    return b"".join(parts)


def build_execute_instruction(
    identity: Pubkey,
    action: Action,
    signatures: Sequence[SignerSignature],
    program_id: Pubkey | None = None,
) -> Instruction:
    """Build the single ``execute`` instruction for an authorized action.

    The recipient slot carries the vault itself for non-transfer actions so
    the account list keeps the positions the program expects.
    """
    if not signatures:
        raise InsufficientSignaturesError(0, 1)
    program = program_id or keystore_program_id()
    vault, _ = vault_address(identity, program)
    recipient = action.to if isinstance(action, SendAction) else vault

    data = EXECUTE_DISCRIMINATOR + encode_action(action) + encode_signatures(signatures)
    accounts = [
        AccountMeta(identity, is_signer=False, is_writable=True),
        AccountMeta(vault, is_signer=False, is_writable=True),
        AccountMeta(recipient, is_signer=False, is_writable=True),
        AccountMeta(SYSVAR_INSTRUCTIONS_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program, data, accounts)


def build_create_identity_instruction(
    payer: Pubkey,
    public_key: bytes,
    device_name: str,
    program_id: Pubkey | None = None,
) -> Instruction:
    """Build ``create_identity`` registering the first device key."""
    program = program_id or keystore_program_id()
    identity, _ = identity_address(payer, program)
    vault, _ = vault_address(identity, program)
    data = CREATE_IDENTITY_DISCRIMINATOR + _check_public_key(public_key) + _encode_string(device_name)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(identity, is_signer=False, is_writable=True),
        AccountMeta(vault, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program, data, accounts)


def build_add_key_instruction(
    authority: Pubkey,
    identity: Pubkey,
    public_key: bytes,
    device_name: str,
    program_id: Pubkey | None = None,
) -> Instruction:
    """Build ``add_key`` registering a backup device on ``identity``."""
    program = program_id or keystore_program_id()
    data = ADD_KEY_DISCRIMINATOR + _check_public_key(public_key) + _encode_string(device_name)
    accounts = [
        AccountMeta(authority, is_signer=True, is_writable=True),
        AccountMeta(identity, is_signer=False, is_writable=True),
    ]
    return Instruction(program, data, accounts)
