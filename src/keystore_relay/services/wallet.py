"""Client-side keystore wallet.

Ties the codecs together into the end-to-end flow a device app runs: read
the identity, bind an action to the current nonce, collect device
signatures, assemble the transaction and hand it to a relay (or pay the fee
locally). Biometric prompts and credential persistence are reached only
through the ``MessageSigner`` and ``CredentialStore`` protocols.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from threading import Lock
from typing import Any, Protocol

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from keystore_relay.core.account import IdentityAccount, decode_identity_account
from keystore_relay.core.errors import ValidationError
from keystore_relay.core.instructions import (
    build_add_key_instruction,
    build_create_identity_instruction,
    build_execute_instruction,
    identity_address,
    keystore_program_id,
    vault_address,
)
from keystore_relay.core.message import Action, PendingAction, SendAction, SetThresholdAction
from keystore_relay.core.signatures import SignatureAggregator, SignerSignature, compress_public_key
from keystore_relay.core.transaction import assemble
from keystore_relay.core.verification import build_verification_instruction
from keystore_relay.services.confirmation import ConfirmationOutcome, ConfirmationPoller
from keystore_relay.services.relayer_client import RelayerClient
from keystore_relay.services.rpc import SolanaRpcClient

# Configure logger for this module
logger = logging.getLogger(__name__)

CREDENTIAL_STORAGE_KEY = "keystore_credential"


class MessageSigner(Protocol):
    """A device able to sign keystore messages, usually behind a biometric prompt."""

    key_index: int

    async def sign(self, message: bytes) -> bytes:
        """Return a P-256 ECDSA signature over ``message`` (DER or raw)."""
        ...


class P256KeySigner:
    """Software signer over a ``cryptography`` P-256 private key.

    Stands in for a secure-enclave key in scripts and tests.
    """

    def __init__(self, key_index: int, private_key: ec.EllipticCurvePrivateKey) -> None:
        self.key_index = key_index
        self._private_key = private_key

    @classmethod
    def generate(cls, key_index: int) -> P256KeySigner:
        return cls(key_index, ec.generate_private_key(ec.SECP256R1()))

    @property
    def public_key(self) -> bytes:
        """Compressed 33-byte public key, as registered on-chain."""
        uncompressed = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint,
        )
        return compress_public_key(uncompressed)

    def sign_sync(self, message: bytes) -> bytes:
        """Return a DER-encoded ECDSA-SHA256 signature over ``message``."""
        return self._private_key.sign(message, ec.ECDSA(hashes.SHA256()))

    async def sign(self, message: bytes) -> bytes:
        return self.sign_sync(message)


@dataclass(frozen=True)
class StoredCredential:
    """Metadata persisted for the device credential backing a wallet."""

    credential_id: bytes
    public_key: bytes
    owner: str
    device_name: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "credentialId": list(self.credential_id),
                "publicKey": list(self.public_key),
                "owner": self.owner,
                "deviceName": self.device_name,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> StoredCredential:
        try:
            data: dict[str, Any] = json.loads(raw)
            return cls(
                credential_id=bytes(data["credentialId"]),
                public_key=bytes(data["publicKey"]),
                owner=str(data["owner"]),
                device_name=str(data["deviceName"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError(f"Stored credential is corrupt: {exc}") from exc


class CredentialStore(Protocol):
    """Key-value persistence for serialized credentials."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCredentialStore:
    """Process-local ``CredentialStore``."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._lock = Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


@dataclass(frozen=True)
class AuthorizedAction:
    """A pending action together with the signatures collected for it."""

    identity: Pubkey
    pending: PendingAction
    signatures: tuple[SignerSignature, ...]


@dataclass(frozen=True)
class SubmittedAction:
    signature: str
    outcome: ConfirmationOutcome | None = None


class KeystoreWallet:
    """High-level wallet operations for a keystore identity."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        *,
        credential_store: CredentialStore | None = None,
        relayer_client: RelayerClient | None = None,
        fee_payer: Keypair | None = None,
        poller: ConfirmationPoller | None = None,
        program_id: Pubkey | None = None,
        low_s: bool = True,
    ) -> None:
        self._rpc = rpc
        self._credentials = credential_store or InMemoryCredentialStore()
        self._relayer = relayer_client
        self._fee_payer = fee_payer
        self._poller = poller or ConfirmationPoller(rpc)
        self.program_id = program_id or keystore_program_id()
        self.low_s = low_s

    # --- Credential persistence ------------------------------------------------------
    def get_stored_credential(self) -> StoredCredential | None:
        raw = self._credentials.get(CREDENTIAL_STORAGE_KEY)
        return StoredCredential.from_json(raw) if raw is not None else None

    def store_credential(self, credential: StoredCredential) -> None:
        self._credentials.set(CREDENTIAL_STORAGE_KEY, credential.to_json())

    def has_wallet(self) -> bool:
        return self.get_stored_credential() is not None

    def delete_wallet(self) -> None:
        """Forget the stored credential; the on-chain identity is untouched."""
        self._credentials.delete(CREDENTIAL_STORAGE_KEY)

    def _resolve_identity(self, identity: Pubkey | None) -> Pubkey:
        if identity is not None:
            return identity
        credential = self.get_stored_credential()
        if credential is None:
            raise ValidationError("No wallet found: pass an identity or create a wallet first")
        return Pubkey.from_string(credential.owner)

    # --- Reads -----------------------------------------------------------------------
    async def get_identity_account(self, identity: Pubkey | None = None) -> IdentityAccount | None:
        """Fetch and decode the identity account, or ``None`` if it does not exist."""
        data = await self._rpc.get_account_data(self._resolve_identity(identity))
        if data is None:
            return None
        return decode_identity_account(data)

    async def _require_account(self, identity: Pubkey) -> IdentityAccount:
        account = await self.get_identity_account(identity)
        if account is None:
            raise ValidationError(f"Identity account {identity} not found")
        return account

    async def get_vault_balance(self, identity: Pubkey | None = None) -> int:
        """Return the vault balance of ``identity`` in lamports."""
        vault, _ = vault_address(self._resolve_identity(identity), self.program_id)
        return await self._rpc.get_balance(vault)

    # --- Authorization ---------------------------------------------------------------
    async def build_pending_action(
        self, action: Action, identity: Pubkey | None = None
    ) -> PendingAction:
        """Bind ``action`` to the identity's current on-chain nonce."""
        account = await self._require_account(self._resolve_identity(identity))
        return PendingAction.for_account(action, account)

    async def authorize(
        self,
        action: Action,
        signers: Sequence[MessageSigner],
        identity: Pubkey | None = None,
    ) -> AuthorizedAction:
        """Collect device signatures for ``action`` at the current nonce.

        The threshold and key indices are checked locally so an
        under-signed action never costs a relay round trip.

        Raises:
            DuplicateSignerError: If two signers share a key index.
            InsufficientSignaturesError: If fewer than ``threshold`` signed.
        """
        address = self._resolve_identity(identity)
        account = await self._require_account(address)
        account.validate()
        pending = PendingAction.for_account(action, account)

        aggregator = SignatureAggregator(low_s=self.low_s)
        message = pending.message
        for signer in signers:
            aggregator.add(signer.key_index, await signer.sign(message))
        signatures = aggregator.finalize(account)
        return AuthorizedAction(identity=address, pending=pending, signatures=tuple(signatures))

    def build_transaction(
        self,
        authorized: AuthorizedAction,
        account: IdentityAccount,
        fee_payer: Pubkey,
        recent_blockhash: Hash,
    ) -> Transaction:
        """Assemble the unsigned transaction for an authorized action.

        Each verification instruction carries the key registered at that
        signer's own index.
        """
        authorized.pending.ensure_current(account)
        message = authorized.pending.message
        verifications = [
            build_verification_instruction(
                account.public_key_for(entry.key_index), message, entry.signature
            )
            for entry in authorized.signatures
        ]
        execute = build_execute_instruction(
            authorized.identity,
            authorized.pending.action,
            authorized.signatures,
            self.program_id,
        )
        return assemble(verifications, execute, fee_payer, recent_blockhash)

    # --- Submission ------------------------------------------------------------------
    async def submit(self, authorized: AuthorizedAction, *, confirm: bool = True) -> SubmittedAction:
        """Submit an authorized action through the relay or the local fee payer.

        The nonce is re-read first; if another action executed in between
        this raises ``StaleNonceError`` and the action must be re-signed.
        """
        account = await self._require_account(authorized.identity)
        authorized.pending.ensure_current(account)
        latest = await self._rpc.get_latest_blockhash()

        if self._relayer is not None:
            # The relay replaces the fee payer; the placeholder must not be an instruction account.
            placeholder = self._fee_payer.pubkey() if self._fee_payer else Keypair().pubkey()
            transaction = self.build_transaction(
                authorized, account, placeholder, latest.blockhash
            )
            signature = await self._relayer.relay_transaction(transaction, authorized.identity)
            # The relay bound its own, newer blockhash; re-read so expiry is not premature.
            expiry = (await self._rpc.get_latest_blockhash()).last_valid_block_height
        elif self._fee_payer is not None:
            transaction = self.build_transaction(
                authorized, account, self._fee_payer.pubkey(), latest.blockhash
            )
            signed = Transaction([self._fee_payer], transaction.message, latest.blockhash)
            signature = await self._rpc.send_transaction(signed)
            expiry = latest.last_valid_block_height
        else:
            raise ValidationError("Wallet has neither a relay client nor a fee payer")

        logger.info("Submitted action for %s: %s", authorized.identity, signature)
        if not confirm:
            return SubmittedAction(signature=signature)
        outcome = await self._poller.confirm(signature, expiry)
        outcome.raise_for_status()
        return SubmittedAction(signature=signature, outcome=outcome)

    async def send(
        self,
        to: Pubkey,
        lamports: int,
        signers: Sequence[MessageSigner],
        *,
        identity: Pubkey | None = None,
        confirm: bool = True,
    ) -> SubmittedAction:
        """Transfer ``lamports`` from the vault to ``to``."""
        authorized = await self.authorize(SendAction(to=to, lamports=lamports), signers, identity)
        return await self.submit(authorized, confirm=confirm)

    async def set_threshold(
        self,
        threshold: int,
        signers: Sequence[MessageSigner],
        *,
        identity: Pubkey | None = None,
        confirm: bool = True,
    ) -> SubmittedAction:
        """Change how many device signatures the identity requires."""
        authorized = await self.authorize(SetThresholdAction(threshold=threshold), signers, identity)
        return await self.submit(authorized, confirm=confirm)

    # --- Identity management ---------------------------------------------------------
    async def _send_with_fee_payer(self, instruction: Instruction) -> str:
        if self._fee_payer is None:
            raise ValidationError("A fee payer keypair is required for this operation")
        latest = await self._rpc.get_latest_blockhash()
        message = Message.new_with_blockhash([instruction], self._fee_payer.pubkey(), latest.blockhash)
        signed = Transaction([self._fee_payer], message, latest.blockhash)
        return await self._rpc.send_transaction(signed)

    async def create_wallet(
        self, public_key: bytes, device_name: str, credential_id: bytes = b""
    ) -> tuple[Pubkey, Pubkey, str]:
        """Create an identity owned by the fee payer with its first device key.

        Returns:
            ``(identity, vault, transaction_signature)``.
        """
        if self._fee_payer is None:
            raise ValidationError("A fee payer keypair is required to create a wallet")
        compressed = compress_public_key(public_key)
        owner = self._fee_payer.pubkey()
        identity, _ = identity_address(owner, self.program_id)
        vault, _ = vault_address(identity, self.program_id)

        instruction = build_create_identity_instruction(
            owner, compressed, device_name, self.program_id
        )
        signature = await self._send_with_fee_payer(instruction)
        self.store_credential(
            StoredCredential(
                credential_id=credential_id,
                public_key=compressed,
                owner=str(identity),
                device_name=device_name,
            )
        )
        logger.info("Created identity %s with vault %s", identity, vault)
        return identity, vault, signature

    async def add_device(
        self, public_key: bytes, device_name: str, identity: Pubkey | None = None
    ) -> str:
        """Register a backup device key on the identity."""
        if self._fee_payer is None:
            raise ValidationError("A fee payer keypair is required to add a device")
        instruction = build_add_key_instruction(
            self._fee_payer.pubkey(),
            self._resolve_identity(identity),
            compress_public_key(public_key),
            device_name,
            self.program_id,
        )
        return await self._send_with_fee_payer(instruction)
