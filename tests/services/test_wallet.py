from unittest.mock import AsyncMock

import httpx
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from keystore_relay.core.errors import (
    DuplicateSignerError,
    InsufficientSignaturesError,
    StaleNonceError,
    ValidationError,
)
from keystore_relay.core.instructions import identity_address, vault_address
from keystore_relay.core.message import SetThresholdAction, build_message
from keystore_relay.core.verification import SECP256R1_PROGRAM_ID
from keystore_relay.services.confirmation import ConfirmationPoller, ConfirmationStatus
from keystore_relay.main import app as fastapi_app
from keystore_relay.services.relayer_client import RelayerClient, RelayerClientConfig
from keystore_relay.services.rpc import SignatureStatus
from keystore_relay.services.wallet import (
    InMemoryCredentialStore,
    KeystoreWallet,
    P256KeySigner,
    StoredCredential,
)

CONFIRMED = SignatureStatus(slot=3, confirmations=1, err=None, confirmation_status="confirmed")


@pytest.fixture
def fee_payer():
    return Keypair()


@pytest.fixture
def wallet(fake_rpc, fee_payer, no_sleep):
    poller = ConfirmationPoller(fake_rpc, interval_seconds=0, max_attempts=3, sleep=no_sleep)
    return KeystoreWallet(fake_rpc, fee_payer=fee_payer, poller=poller)


@pytest.fixture
def funded_identity(identity, signers, make_account, store_account):
    account = make_account(signers, threshold=2, nonce=7)
    store_account(identity, account)
    return identity


def _verification_payloads(transaction):
    message = transaction.message
    return [
        bytes(ix.data)
        for ix in message.instructions
        if message.account_keys[ix.program_id_index] == SECP256R1_PROGRAM_ID
    ]


@pytest.mark.asyncio
async def test_send_with_local_fee_payer(wallet, fake_rpc, fee_payer, funded_identity, signers):
    fake_rpc.statuses = [CONFIRMED]
    recipient = Pubkey.new_unique()

    result = await wallet.send(recipient, 250_000, [signers[2], signers[0]], identity=funded_identity)

    assert result.outcome.status is ConfirmationStatus.CONFIRMED
    sent = fake_rpc.sent[0]
    assert sent.message.account_keys[0] == fee_payer.pubkey()
    sent.verify()

    payloads = _verification_payloads(sent)
    # Each verification instruction carries the key registered at its signer's index.
    assert [payload[76:109] for payload in payloads] == [signers[2].public_key, signers[0].public_key]


@pytest.mark.asyncio
async def test_collected_signatures_verify_against_registered_keys(
    wallet, funded_identity, signers
):
    authorized = await wallet.authorize(
        SetThresholdAction(threshold=1), signers[:2], identity=funded_identity
    )
    message = build_message(SetThresholdAction(threshold=1), 7)
    assert authorized.pending.message == message

    for entry in authorized.signatures:
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256R1(), signers[entry.key_index].public_key
        )
        r = int.from_bytes(entry.signature[:32], "big")
        s = int.from_bytes(entry.signature[32:], "big")
        public_key.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))


@pytest.mark.asyncio
async def test_single_signature_below_threshold_never_submits(wallet, fake_rpc, funded_identity, signers):
    with pytest.raises(InsufficientSignaturesError):
        await wallet.send(Pubkey.new_unique(), 1, [signers[0]], identity=funded_identity)
    assert "sendTransaction" not in fake_rpc.calls
    assert "getLatestBlockhash" not in fake_rpc.calls


@pytest.mark.asyncio
async def test_duplicate_signer_rejected(wallet, funded_identity, signers):
    with pytest.raises(DuplicateSignerError):
        await wallet.authorize(
            SetThresholdAction(threshold=2), [signers[0], signers[0]], identity=funded_identity
        )


@pytest.mark.asyncio
async def test_submit_detects_stale_nonce(
    wallet, fake_rpc, funded_identity, signers, make_account, store_account
):
    authorized = await wallet.authorize(
        SetThresholdAction(threshold=2), signers[:2], identity=funded_identity
    )
    store_account(funded_identity, make_account(signers, threshold=2, nonce=8))

    with pytest.raises(StaleNonceError):
        await wallet.submit(authorized)
    assert fake_rpc.sent == []


@pytest.mark.asyncio
async def test_submit_through_relay(fake_rpc, funded_identity, signers, no_sleep):
    relayer = AsyncMock(spec=RelayerClient)
    relayer.relay_transaction.return_value = "relayed-signature"
    poller = ConfirmationPoller(fake_rpc, interval_seconds=0, max_attempts=3, sleep=no_sleep)
    wallet = KeystoreWallet(fake_rpc, relayer_client=relayer, poller=poller)

    result = await wallet.set_threshold(2, signers[:2], identity=funded_identity, confirm=False)

    assert result.signature == "relayed-signature"
    assert result.outcome is None
    transaction, identity = relayer.relay_transaction.await_args.args
    assert identity == funded_identity
    assert len(_verification_payloads(transaction)) == 2
    assert fake_rpc.sent == []


@pytest.mark.asyncio
async def test_submit_requires_relay_or_fee_payer(fake_rpc, funded_identity, signers):
    wallet = KeystoreWallet(fake_rpc)
    authorized = await wallet.authorize(
        SetThresholdAction(threshold=2), signers[:2], identity=funded_identity
    )
    with pytest.raises(ValidationError):
        await wallet.submit(authorized)


@pytest.mark.asyncio
async def test_missing_identity_account(wallet):
    assert await wallet.get_identity_account(Pubkey.new_unique()) is None
    with pytest.raises(ValidationError):
        await wallet.build_pending_action(SetThresholdAction(threshold=1), Pubkey.new_unique())


@pytest.mark.asyncio
async def test_vault_balance(wallet, fake_rpc, funded_identity):
    vault, _ = vault_address(funded_identity)
    fake_rpc.balances[vault] = 123
    assert await wallet.get_vault_balance(funded_identity) == 123


@pytest.mark.asyncio
async def test_create_wallet_stores_credential(wallet, fake_rpc, fee_payer):
    signer = P256KeySigner.generate(0)
    identity, vault, signature = await wallet.create_wallet(
        signer.public_key, "iPhone", credential_id=b"\x01\x02"
    )

    assert identity == identity_address(fee_payer.pubkey())[0]
    assert vault == vault_address(identity)[0]
    assert signature == str(fake_rpc.sent[0].signatures[0])
    assert wallet.has_wallet()
    credential = wallet.get_stored_credential()
    assert credential.owner == str(identity)
    assert credential.public_key == signer.public_key

    # Stored identity is used when none is passed.
    fake_rpc.balances[vault] = 5
    assert await wallet.get_vault_balance() == 5

    wallet.delete_wallet()
    assert not wallet.has_wallet()


@pytest.mark.asyncio
async def test_add_device_requires_fee_payer(fake_rpc):
    wallet = KeystoreWallet(fake_rpc)
    with pytest.raises(ValidationError):
        await wallet.add_device(P256KeySigner.generate(1).public_key, "backup", Pubkey.new_unique())


def test_stored_credential_json_round_trip():
    credential = StoredCredential(
        credential_id=b"\x09", public_key=b"\x02" * 33, owner="owner", device_name="Pixel"
    )
    store = InMemoryCredentialStore()
    store.set("k", credential.to_json())
    assert StoredCredential.from_json(store.get("k")) == credential
    store.delete("k")
    assert store.get("k") is None


def test_corrupt_stored_credential():
    with pytest.raises(ValidationError):
        StoredCredential.from_json("{not json")


@pytest.mark.asyncio
async def test_send_through_relay_service_end_to_end(
    client, fake_rpc, relayer_keypair, funded_identity, signers, no_sleep
):
    """Wallet-built transactions pass the relay's checks and are fee-paid by the relay."""
    relay_client = RelayerClient(RelayerClientConfig(base_url="http://relay.test", timeout_seconds=5.0))
    relay_client._client = httpx.AsyncClient(
        base_url="http://relay.test", transport=httpx.ASGITransport(app=fastapi_app)
    )
    fake_rpc.statuses = [CONFIRMED]
    poller = ConfirmationPoller(fake_rpc, interval_seconds=0, max_attempts=3, sleep=no_sleep)
    wallet = KeystoreWallet(fake_rpc, relayer_client=relay_client, poller=poller)
    recipient = Pubkey.new_unique()

    result = await wallet.send(recipient, 42_000, signers[:2], identity=funded_identity)
    await relay_client.close()

    assert result.outcome.status is ConfirmationStatus.CONFIRMED
    assert len(fake_rpc.sent) == 1
    sent = fake_rpc.sent[0]
    assert result.signature == str(sent.signatures[0])
    assert sent.message.account_keys[0] == relayer_keypair.pubkey()
    assert sent.message.header.num_required_signatures == 1
    assert funded_identity in sent.message.account_keys
    assert recipient in sent.message.account_keys
    sent.verify()
    assert [payload[76:109] for payload in _verification_payloads(sent)] == [
        signers[0].public_key,
        signers[1].public_key,
    ]
