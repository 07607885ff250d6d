import asyncio
from datetime import datetime, timedelta

import pytest

from creditledger.core.exceptions import (
    AppError,
    BadRequestError,
    CompensationFailedError,
    IdempotencyInProgressError,
    IdempotencyKeyReusedError,
    InsufficientCreditsError,
)
from creditledger.models.domain import IdempotencyRecord, IdempotencyState, TransactionKind
from creditledger.services.idempotency import IdempotencyGuard, fingerprint


class Counter:
    def __init__(self, result=None, error: Exception | None = None, delay: float = 0.0):
        self.calls = 0
        self.result = result or {"ok": True}
        self.error = error
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {**self.result, "call": self.calls}


@pytest.fixture
def guard(stores):
    return IdempotencyGuard(stores.idempotency, ttl_seconds=3600, wait_seconds=1.0, poll_interval=0.01)


async def test_fresh_key_runs_and_replays(guard):
    op = Counter()

    first = await guard.run("key-1", "test", op, account_id="a")
    second = await guard.run("key-1", "test", op, account_id="a")

    assert op.calls == 1
    assert not first.replayed
    assert second.replayed
    assert second.body == first.body


async def test_scopes_are_independent(guard):
    op = Counter()
    await guard.run("key-1", "scope-a", op)
    await guard.run("key-1", "scope-b", op)
    assert op.calls == 2


async def test_racing_duplicates_deduct_once(guard, ledger, make_account):
    account_id = await make_account(balance=1)

    async def deduct():
        await asyncio.sleep(0.05)
        result = await ledger.deduct(account_id, 1, TransactionKind.READING, "Single reading")
        return {"new_balance": result.new_balance, "transaction_id": result.transaction_id}

    first, second = await asyncio.gather(
        guard.run("K", "readings.create", deduct, account_id=account_id),
        guard.run("K", "readings.create", deduct, account_id=account_id),
    )

    assert first.body == second.body
    assert sorted([first.replayed, second.replayed]) == [False, True]
    assert (await ledger.get_account(account_id)).balance == 0
    readings, _ = await ledger.history(account_id, kind=TransactionKind.READING)
    assert len(readings) == 1


async def test_ordinary_failure_releases_key(guard):
    failing = Counter(error=InsufficientCreditsError(required=3, balance=1))
    with pytest.raises(InsufficientCreditsError):
        await guard.run("key-2", "test", failing)

    op = Counter()
    result = await guard.run("key-2", "test", op)
    assert op.calls == 1
    assert not result.replayed


async def test_unexpected_exception_releases_key(guard, stores):
    with pytest.raises(RuntimeError):
        await guard.run("key-3", "test", Counter(error=RuntimeError("boom")))
    assert await stores.idempotency.get("key-3", "test") is None


async def test_replayable_failure_is_stored(guard):
    failing = Counter(error=CompensationFailedError("reading failed", details={"refunded": False}))
    with pytest.raises(CompensationFailedError):
        await guard.run("key-4", "test", failing)

    with pytest.raises(AppError) as exc:
        await guard.run("key-4", "test", failing)

    assert failing.calls == 1
    assert exc.value.code == "REFUND_FAILED"
    assert exc.value.status_code == 500
    assert exc.value.details == {"refunded": False}


async def test_expired_key_runs_again(stores):
    guard = IdempotencyGuard(stores.idempotency, ttl_seconds=0, wait_seconds=0.5, poll_interval=0.01)
    op = Counter()

    await guard.run("key-5", "test", op)
    again = await guard.run("key-5", "test", op)

    assert op.calls == 2
    assert not again.replayed


async def test_key_reuse_across_accounts_or_payloads(guard):
    await guard.run("key-6", "test", Counter(), account_id="a", request_hash=fingerprint({"x": 1}))

    with pytest.raises(IdempotencyKeyReusedError):
        await guard.run("key-6", "test", Counter(), account_id="b", request_hash=fingerprint({"x": 1}))
    with pytest.raises(IdempotencyKeyReusedError):
        await guard.run("key-6", "test", Counter(), account_id="a", request_hash=fingerprint({"x": 2}))


async def test_in_flight_duplicate_times_out(stores):
    guard = IdempotencyGuard(stores.idempotency, ttl_seconds=3600, wait_seconds=0.05, poll_interval=0.01)
    await stores.idempotency.claim(
        IdempotencyRecord(key="key-7", scope="test", expires_at=datetime.utcnow() + timedelta(hours=1))
    )
    op = Counter()

    with pytest.raises(IdempotencyInProgressError):
        await guard.run("key-7", "test", op)
    assert op.calls == 0


async def test_cancelled_request_releases_key(guard, stores, components, ledger, make_account):
    account_id = await make_account(balance=5)
    started = asyncio.Event()

    async def slow_reading(transaction_id):
        started.set()
        await asyncio.sleep(10)

    async def create_reading():
        result = await components.orchestrator.run(
            account_id, 3, TransactionKind.READING, "Three Card reading", slow_reading, operation="create_reading"
        )
        return {"transaction_id": result.transaction_id}

    task = asyncio.create_task(guard.run("key-8", "readings.create", create_reading, account_id=account_id))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await ledger.get_account(account_id)).balance == 5
    assert await stores.idempotency.get("key-8", "readings.create") is None
    retry = Counter()
    result = await guard.run("key-8", "readings.create", retry, account_id=account_id)
    assert retry.calls == 1
    assert not result.replayed


@pytest.mark.parametrize("key", [None, "", "   ", "k" * 257])
async def test_key_validation(guard, key):
    with pytest.raises(BadRequestError):
        await guard.run(key, "test", Counter())


async def test_purge_expired(stores):
    now = datetime.utcnow()
    await stores.idempotency.claim(IdempotencyRecord(key="old", scope="s", expires_at=now - timedelta(seconds=1)))
    await stores.idempotency.claim(IdempotencyRecord(key="new", scope="s", expires_at=now + timedelta(hours=1)))
    guard = IdempotencyGuard(stores.idempotency)

    assert await guard.purge_expired() == 1
    assert await stores.idempotency.get("old", "s") is None
    record = await stores.idempotency.get("new", "s")
    assert record.state == IdempotencyState.PENDING


def test_fingerprint_ignores_key_order():
    assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})
    assert fingerprint({"a": 1}) != fingerprint({"a": 2})
