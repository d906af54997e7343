import base64
import json

import httpx
import pytest
from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from keystore_relay.core.errors import RateLimitExceededError, SubmissionFailedError, ValidationError
from keystore_relay.services.relayer_client import RelayerClient, RelayerClientConfig

BASE_URL = "http://relay.test"


def _client(handler) -> RelayerClient:
    client = RelayerClient(RelayerClientConfig(base_url=BASE_URL, timeout_seconds=5.0))
    client._client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return client


def _transaction() -> Transaction:
    return Transaction.new_unsigned(
        Message.new_with_blockhash([], Pubkey.new_unique(), Hash.default())
    )


@pytest.mark.asyncio
async def test_relay_transaction_posts_base64_and_identity():
    identity = Pubkey.new_unique()
    transaction = _transaction()
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"signature": "abc", "status": "success"})

    signature = await _client(handler).relay_transaction(transaction, identity)

    assert signature == "abc"
    assert seen["path"] == "/relay"
    assert seen["body"]["identity"] == str(identity)
    assert base64.b64decode(seen["body"]["transaction"]) == bytes(transaction)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [(400, ValidationError), (429, RateLimitExceededError), (500, SubmissionFailedError)],
)
async def test_relay_errors_are_mapped(status_code, error_type):
    def handler(request):
        return httpx.Response(status_code, json={"error": "nope"})

    with pytest.raises(error_type):
        await _client(handler).relay_transaction(_transaction(), Pubkey.new_unique())


@pytest.mark.asyncio
async def test_check_health():
    def handler(request):
        return httpx.Response(200, json={"status": "ok", "relayer": "x", "network": "devnet"})

    assert await _client(handler).check_health() is True


@pytest.mark.asyncio
async def test_check_health_false_when_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert await _client(handler).check_health() is False


@pytest.mark.asyncio
async def test_balance_and_stats():
    def handler(request):
        if request.url.path == "/balance":
            return httpx.Response(200, json={"balance": 1.25, "lamports": 1_250_000_000})
        return httpx.Response(200, json={"transactionsRelayed": 4})

    client = _client(handler)
    assert await client.get_balance() == pytest.approx(1.25)
    assert (await client.get_stats())["transactionsRelayed"] == 4
    await client.close()
