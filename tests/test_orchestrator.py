"""Deduct-first compensation with fake side effects."""

import asyncio

import pytest

from creditledger.core.exceptions import (
    CompensationFailedError,
    CreditDeductionFailedError,
    InsufficientCreditsError,
    PaidOperationFailedError,
    RefundFailedError,
)
from creditledger.models.domain import PendingRefundStatus, TransactionKind
from creditledger.services.ledger import CreditLedger
from creditledger.services.orchestrator import CompensatingOrchestrator, OperationState
from creditledger.services.refunds import RefundRecovery


class RefundOutageLedger(CreditLedger):
    async def refund(self, account_id, amount, description, original_transaction_id=None):
        raise RefundFailedError(details={"account_id": account_id})


class DrainedAfterCheckLedger(CreditLedger):
    """Another request spends the whole balance right after the funds check."""

    async def check_sufficient(self, account_id, amount):
        check = await super().check_sufficient(account_id, amount)
        account = await self.get_account(account_id)
        await super().deduct(account_id, account.balance, TransactionKind.READING, "Concurrent reading")
        return check


async def test_success_returns_proof_of_payment(components, ledger, make_account):
    account_id = await make_account(balance=5)
    seen = []

    async def side_effect(transaction_id):
        seen.append(transaction_id)
        return "interpretation"

    result = await components.orchestrator.run(
        account_id, 3, TransactionKind.READING, "Three Card reading", side_effect, operation="create_reading"
    )

    assert result.value == "interpretation"
    assert result.state == OperationState.COMPLETED
    assert seen == [result.transaction_id]
    assert result.new_balance == 2
    assert (await ledger.get_account(account_id)).balance == 2


async def test_insufficient_funds_skip_side_effect(components, ledger, make_account):
    account_id = await make_account(balance=2)
    _, before = await ledger.history(account_id)
    calls = []

    async def side_effect(transaction_id):
        calls.append(transaction_id)

    with pytest.raises(InsufficientCreditsError):
        await components.orchestrator.run(
            account_id, 3, TransactionKind.READING, "Three Card reading", side_effect, operation="create_reading"
        )

    assert calls == []
    _, after = await ledger.history(account_id)
    assert after == before


async def test_side_effect_failure_is_refunded(components, ledger, make_account):
    account_id = await make_account(balance=5)

    async def side_effect(transaction_id):
        raise RuntimeError("model timeout")

    with pytest.raises(PaidOperationFailedError) as exc:
        await components.orchestrator.run(
            account_id, 1, TransactionKind.QUESTION, "Follow-up question", side_effect, operation="add_follow_up"
        )

    details = exc.value.details
    assert details["credits_deducted"] is True
    assert details["refunded"] is True
    assert details["error"] == "model timeout"
    assert (await ledger.get_account(account_id)).balance == 5
    items, _ = await ledger.history(account_id, limit=2)
    assert [tx.amount for tx in items] == [1, -1]
    assert items[0].transaction_id == details["refund_transaction_id"]
    assert items[0].original_transaction_id == details["transaction_id"] == items[1].transaction_id


async def test_refund_failure_is_reported_and_queued(stores, ledger, make_account):
    account_id = await make_account(balance=5)
    recovery = RefundRecovery(ledger, stores.pending_refunds)
    orchestrator = CompensatingOrchestrator(RefundOutageLedger(stores.unit_of_work), recovery)

    async def side_effect(transaction_id):
        raise RuntimeError("model timeout")

    with pytest.raises(CompensationFailedError) as exc:
        await orchestrator.run(
            account_id, 3, TransactionKind.READING, "Three Card reading", side_effect, operation="create_reading"
        )

    details = exc.value.details
    assert exc.value.replayable
    assert details["credits_deducted"] is True
    assert details["refunded"] is False
    assert details["refund_queued"] is True
    assert details["error"] == "model timeout"
    assert details["refund_error"]
    assert (await ledger.get_account(account_id)).balance == 2

    summary = await recovery.retry_due()

    assert summary == {"resolved": 1, "retrying": 0, "manual": 0}
    assert (await ledger.get_account(account_id)).balance == 5
    refunds, _ = await ledger.history(account_id, kind=TransactionKind.REFUND)
    assert refunds[0].original_transaction_id == details["transaction_id"]
    assert await recovery.list_open() == []
    assert (await ledger.verify_account(account_id)).consistent


async def test_retry_gives_up_to_manual_reconciliation(stores, ledger, make_account):
    account_id = await make_account(balance=5)
    recovery = RefundRecovery(RefundOutageLedger(stores.unit_of_work), stores.pending_refunds, max_attempts=2)
    await recovery.enqueue(account_id, 1, "Follow-up question", "tx-1", "add_follow_up", "db down")

    assert await recovery.retry_due() == {"resolved": 0, "retrying": 1, "manual": 0}
    assert await recovery.retry_due() == {"resolved": 0, "retrying": 0, "manual": 1}
    assert await recovery.retry_due() == {"resolved": 0, "retrying": 0, "manual": 0}

    [pending] = await recovery.list_open()
    assert pending.status == PendingRefundStatus.MANUAL
    assert pending.attempts == 2


async def test_retry_after_inline_refund_does_not_double_credit(stores, ledger, make_account):
    account_id = await make_account(balance=5)
    debit = await ledger.deduct(account_id, 2, TransactionKind.READING, "Two Card reading")
    await ledger.refund(account_id, 2, "Two Card reading", original_transaction_id=debit.transaction_id)
    recovery = RefundRecovery(ledger, stores.pending_refunds)
    await recovery.enqueue(account_id, 2, "Two Card reading", debit.transaction_id, "create_reading", "timeout")

    assert (await recovery.retry_due())["resolved"] == 1
    assert (await ledger.get_account(account_id)).balance == 5


async def test_cancelled_side_effect_is_compensated(components, ledger, make_account):
    account_id = await make_account(balance=5)
    started = asyncio.Event()

    async def side_effect(transaction_id):
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(
        components.orchestrator.run(
            account_id, 3, TransactionKind.READING, "Three Card reading", side_effect, operation="create_reading"
        )
    )
    await started.wait()
    assert (await ledger.get_account(account_id)).balance == 2
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert (await ledger.get_account(account_id)).balance == 5


async def test_debit_lost_to_concurrent_spend_fails_deduction(stores, ledger, make_account):
    account_id = await make_account(balance=3)
    orchestrator = CompensatingOrchestrator(DrainedAfterCheckLedger(stores.unit_of_work))
    calls = []

    async def side_effect(transaction_id):
        calls.append(transaction_id)

    with pytest.raises(CreditDeductionFailedError) as exc:
        await orchestrator.run(
            account_id, 1, TransactionKind.QUESTION, "Follow-up question", side_effect, operation="add_follow_up"
        )

    assert exc.value.code == "CREDIT_DEDUCTION_FAILED"
    assert exc.value.details["retryable"] is True
    assert exc.value.details["balance"] == 0
    assert isinstance(exc.value.__cause__, InsufficientCreditsError)
    assert calls == []
    assert (await ledger.get_account(account_id)).balance == 0
    questions, _ = await ledger.history(account_id, kind=TransactionKind.QUESTION)
    assert questions == []
