from unittest.mock import AsyncMock

import pytest

from keystore_relay.core.errors import (
    BlockhashExpiredError,
    ConfirmationTimeoutError,
    SubmissionFailedError,
)
from keystore_relay.services.confirmation import (
    ConfirmationOutcome,
    ConfirmationPoller,
    ConfirmationStatus,
)
from keystore_relay.services.rpc import SignatureStatus

SIGNATURE = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"
EXPIRY = 150


def _status(confirmation_status=None, err=None):
    return SignatureStatus(slot=1, confirmations=0, err=err, confirmation_status=confirmation_status)


@pytest.fixture
def rpc():
    mock = AsyncMock()
    mock.get_signature_status.return_value = None
    mock.get_block_height.return_value = 100
    return mock


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.mark.asyncio
async def test_expires_on_third_poll(rpc, sleep):
    rpc.get_block_height.side_effect = [140, 149, 151]
    poller = ConfirmationPoller(rpc, interval_seconds=1.0, max_attempts=30, sleep=sleep)

    outcome = await poller.confirm(SIGNATURE, EXPIRY)

    assert outcome.status is ConfirmationStatus.EXPIRED
    assert outcome.attempts == 3
    assert rpc.get_signature_status.await_count == 3
    assert sleep.await_count == 2
    with pytest.raises(BlockhashExpiredError):
        outcome.raise_for_status()


@pytest.mark.asyncio
async def test_block_height_equal_to_expiry_is_still_valid(rpc, sleep):
    rpc.get_block_height.return_value = EXPIRY
    rpc.get_signature_status.side_effect = [None, _status("confirmed")]
    poller = ConfirmationPoller(rpc, interval_seconds=0, max_attempts=5, sleep=sleep)

    outcome = await poller.confirm(SIGNATURE, EXPIRY)
    assert outcome.status is ConfirmationStatus.CONFIRMED
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_confirmed_without_checking_block_height(rpc, sleep):
    rpc.get_signature_status.return_value = _status("finalized")
    poller = ConfirmationPoller(rpc, interval_seconds=0, max_attempts=5, sleep=sleep)

    outcome = await poller.confirm(SIGNATURE, EXPIRY)

    assert outcome.confirmed
    rpc.get_block_height.assert_not_awaited()
    sleep.assert_not_awaited()
    outcome.raise_for_status()


@pytest.mark.asyncio
async def test_processed_status_keeps_polling(rpc, sleep):
    rpc.get_signature_status.side_effect = [_status("processed"), _status("confirmed")]
    poller = ConfirmationPoller(rpc, interval_seconds=0, max_attempts=5, sleep=sleep)

    outcome = await poller.confirm(SIGNATURE, EXPIRY)
    assert outcome.status is ConfirmationStatus.CONFIRMED
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_failed_carries_reason(rpc, sleep):
    err = {"InstructionError": [2, {"Custom": 6003}]}
    rpc.get_signature_status.return_value = _status("confirmed", err=err)
    poller = ConfirmationPoller(rpc, interval_seconds=0, max_attempts=5, sleep=sleep)

    outcome = await poller.confirm(SIGNATURE, EXPIRY)

    assert outcome.status is ConfirmationStatus.FAILED
    assert outcome.reason == err
    with pytest.raises(SubmissionFailedError) as excinfo:
        outcome.raise_for_status()
    assert excinfo.value.data == err


@pytest.mark.asyncio
async def test_timeout_after_max_attempts(rpc, sleep):
    poller = ConfirmationPoller(rpc, interval_seconds=0.5, max_attempts=4, sleep=sleep)

    outcome = await poller.confirm(SIGNATURE, EXPIRY)

    assert outcome.status is ConfirmationStatus.TIMEOUT
    assert outcome.attempts == 4
    assert rpc.get_signature_status.await_count == 4
    assert sleep.await_count == 3
    sleep.assert_awaited_with(0.5)
    with pytest.raises(ConfirmationTimeoutError):
        outcome.raise_for_status()


def test_outcome_confirmed_property():
    outcome = ConfirmationOutcome(
        signature=SIGNATURE,
        status=ConfirmationStatus.TIMEOUT,
        attempts=1,
        expiry_block_height=EXPIRY,
    )
    assert not outcome.confirmed
