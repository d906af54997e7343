"""Assembly of keystore transactions and relay-side shape checks."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Sequence
from typing import Final

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from keystore_relay.core.errors import NoInstructionsError, TooLargeError, ValidationError

# Hard ceiling of a serialized transaction (IPv6 MTU minus headers).
PACKET_DATA_SIZE: Final[int] = 1232


def serialized_size(transaction: Transaction) -> int:
    """Return the wire size of ``transaction``, unsigned slots included."""
    return len(bytes(transaction))


def ensure_within_size(transaction: Transaction, limit: int = PACKET_DATA_SIZE) -> int:
    """Raise ``TooLargeError`` if ``transaction`` exceeds ``limit`` bytes."""
    size = serialized_size(transaction)
    if size > limit:
        raise TooLargeError(size, limit)
    return size


def assemble(
    verification_instructions: Sequence[Instruction],
    execution_instruction: Instruction,
    fee_payer: Pubkey,
    recent_blockhash: Hash,
) -> Transaction:
    """Assemble an unsigned transaction for one authorized action.

    Verification instructions are placed strictly before the single execution
    instruction; the program locates them by position.

    Args:
        verification_instructions: One precompile instruction per signer.
        execution_instruction: The keystore ``execute`` instruction.
        fee_payer: Account that pays fees; the relay overwrites it.
        recent_blockhash: Blockhash the transaction is bound to.

    Returns:
        An unsigned ``Transaction``.

    Raises:
        NoInstructionsError: If no verification instruction was supplied.
        TooLargeError: If the result exceeds ``PACKET_DATA_SIZE``.
    """
    if not verification_instructions:
        raise NoInstructionsError("At least one verification instruction is required")
    instructions = [*verification_instructions, execution_instruction]
    message = Message.new_with_blockhash(instructions, fee_payer, recent_blockhash)
    transaction = Transaction.new_unsigned(message)
    ensure_within_size(transaction)
    return transaction


def serialize_for_relay(transaction: Transaction) -> str:
    """Return the base64 form the relay's ``POST /relay`` expects."""
    return base64.b64encode(bytes(transaction)).decode("ascii")


def deserialize_from_relay(encoded: str) -> Transaction:
    """Parse a base64 transaction received from an untrusted caller."""
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as err:
        raise ValidationError(f"Transaction is not valid base64: {err}") from err
    if not raw:
        raise ValidationError("Transaction payload is empty")
    try:
        return Transaction.from_bytes(raw)
    except Exception as err:  # solders raises its own bincode error types
        raise ValidationError(f"Transaction could not be decoded: {err}") from err


def _account_flags(message: Message, index: int) -> tuple[bool, bool]:
    """Return ``(is_signer, is_writable)`` for ``index`` from the message header."""
    header = message.header
    signed = header.num_required_signatures
    if index < signed:
        return True, index < signed - header.num_readonly_signed_accounts
    return False, index < len(message.account_keys) - header.num_readonly_unsigned_accounts


def decompile_instructions(message: Message) -> list[Instruction]:
    """Rebuild the ``Instruction`` list a compiled message was made from.

    The fee payer slot (index 0) is decompiled as a non-signer: whoever
    re-targets the message supplies its own payer, and a key that only
    signed as payer must not become a required signer.
    """
    keys = message.account_keys
    instructions: list[Instruction] = []
    for compiled in message.instructions:
        accounts = []
        for index in bytes(compiled.accounts):
            is_signer, is_writable = _account_flags(message, index)
            accounts.append(AccountMeta(keys[index], is_signer and index != 0, is_writable))
        instructions.append(
            Instruction(keys[compiled.program_id_index], bytes(compiled.data), accounts)
        )
    return instructions


def rebuild_with_fee_payer(
    transaction: Transaction, fee_payer: Pubkey, recent_blockhash: Hash
) -> Message:
    """Return ``transaction``'s message re-targeted at a new fee payer and blockhash.

    Raises:
        NoInstructionsError: If the transaction carries no instructions.
        ValidationError: If an instruction demands a signer other than ``fee_payer``.
    """
    instructions = decompile_instructions(transaction.message)
    if not instructions:
        raise NoInstructionsError()
    message = Message.new_with_blockhash(instructions, fee_payer, recent_blockhash)
    required = message.account_keys[: message.header.num_required_signatures]
    foreign = [str(key) for key in required if key != fee_payer]
    if foreign:
        raise ValidationError(
            "Transaction requires signatures the relay cannot provide: " + ", ".join(foreign)
        )
    return message
