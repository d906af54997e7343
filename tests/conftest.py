# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import pytest
from fastapi.testclient import TestClient
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

os.environ.setdefault("PYTEST_RUNNING", "true")

from keystore_relay.api.v1.endpoints import relay as relay_endpoints
from keystore_relay.core.account import IdentityAccount, RegisteredKey, encode_identity_account
from keystore_relay.core.instructions import build_execute_instruction, identity_address
from keystore_relay.core.message import Action, PendingAction, SendAction
from keystore_relay.core.signatures import SignatureAggregator
from keystore_relay.core.transaction import assemble
from keystore_relay.core.verification import build_verification_instruction
from keystore_relay.main import app as fastapi_app
from keystore_relay.services.confirmation import ConfirmationPoller
from keystore_relay.services.rate_limit import MemoryRateLimitStore, RateLimiter
from keystore_relay.services.relayer import RelayerService
from keystore_relay.services.rpc import LatestBlockhash, SignatureStatus
from keystore_relay.services.wallet import P256KeySigner


class FakeRpc:
    """In-memory stand-in for ``SolanaRpcClient``."""

    def __init__(self) -> None:
        self.accounts: dict[Pubkey, bytes] = {}
        self.balances: dict[Pubkey, int] = {}
        self.statuses: list[SignatureStatus | None] = []
        self.block_heights: list[int] = []
        self.sent: list[Transaction] = []
        self.send_error: Exception | None = None
        self.send_delay = 0.0
        self.blockhash = Hash.new_unique()
        self.last_valid_block_height = 1_000
        self.calls: list[str] = []

    async def get_latest_blockhash(self) -> LatestBlockhash:
        self.calls.append("getLatestBlockhash")
        return LatestBlockhash(self.blockhash, self.last_valid_block_height)

    async def send_transaction(self, transaction: Transaction, *, skip_preflight: bool = False) -> str:
        self.calls.append("sendTransaction")
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(transaction)
        return str(transaction.signatures[0])

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        self.calls.append("getSignatureStatuses")
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0] if self.statuses else None

    async def get_block_height(self) -> int:
        self.calls.append("getBlockHeight")
        if len(self.block_heights) > 1:
            return self.block_heights.pop(0)
        return self.block_heights[0] if self.block_heights else 0

    async def get_balance(self, address: Pubkey) -> int:
        self.calls.append("getBalance")
        return self.balances.get(address, 0)

    async def get_account_data(self, address: Pubkey) -> bytes | None:
        self.calls.append("getAccountInfo")
        return self.accounts.get(address)

    async def close(self) -> None:
        self.calls.append("close")

    def network_calls(self) -> list[str]:
        return [call for call in self.calls if call != "close"]


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def fake_rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def signers() -> list[P256KeySigner]:
    return [P256KeySigner.generate(index) for index in range(3)]


@pytest.fixture
def make_account() -> Callable[..., IdentityAccount]:
    def _make(
        signers: Sequence[P256KeySigner], *, threshold: int = 2, nonce: int = 7
    ) -> IdentityAccount:
        keys = tuple(
            RegisteredKey(public_key=signer.public_key, name=f"device-{i}", added_at=1_700_000_000 + i)
            for i, signer in enumerate(signers)
        )
        return IdentityAccount(bump=254, vault_bump=253, threshold=threshold, nonce=nonce, keys=keys)

    return _make


@pytest.fixture
def identity() -> Pubkey:
    address, _ = identity_address(Pubkey.new_unique())
    return address


@pytest.fixture
def store_account(fake_rpc: FakeRpc) -> Callable[[Pubkey, IdentityAccount], None]:
    def _store(address: Pubkey, account: IdentityAccount) -> None:
        fake_rpc.accounts[address] = encode_identity_account(account)

    return _store


@pytest.fixture
def build_keystore_transaction() -> Callable[..., Transaction]:
    """Build an unsigned keystore transaction the way a device app would."""

    def _build(
        identity: Pubkey,
        account: IdentityAccount,
        signers: Sequence[P256KeySigner],
        action: Action | None = None,
        fee_payer: Pubkey | None = None,
    ) -> Transaction:
        action = action or SendAction(to=Pubkey.new_unique(), lamports=1_000_000)
        pending = PendingAction.for_account(action, account)
        aggregator = SignatureAggregator(low_s=True)
        for signer in signers:
            aggregator.add(signer.key_index, signer.sign_sync(pending.message))
        signatures = aggregator.finalize(account)
        verifications = [
            build_verification_instruction(
                account.public_key_for(entry.key_index), pending.message, entry.signature
            )
            for entry in signatures
        ]
        execute = build_execute_instruction(identity, action, signatures)
        return assemble(verifications, execute, fee_payer or Pubkey.new_unique(), Hash.default())

    return _build


@pytest.fixture
def relayer_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(MemoryRateLimitStore(), max_per_minute=3, max_per_hour=100)


@pytest.fixture
def relayer_service(
    fake_rpc: FakeRpc, relayer_keypair: Keypair, rate_limiter: RateLimiter
) -> RelayerService:
    fake_rpc.balances[relayer_keypair.pubkey()] = 2_500_000_000
    poller = ConfirmationPoller(fake_rpc, interval_seconds=0, max_attempts=5, sleep=_no_sleep)
    return RelayerService(
        fake_rpc,  # type: ignore[arg-type]
        relayer_keypair,
        rate_limiter,
        network="devnet",
        estimated_fee_lamports=5000,
        await_confirmation=False,
        poller=poller,
    )


@pytest.fixture
def client(relayer_service: RelayerService) -> Iterator[TestClient]:
    fastapi_app.dependency_overrides[relay_endpoints.get_relayer_service_dep] = lambda: relayer_service
    test_client = TestClient(fastapi_app)
    try:
        yield test_client
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture
def no_sleep() -> Callable[[float], Any]:
    return _no_sleep
