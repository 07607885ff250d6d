"""In-process backend for tests and local runs.

A single asyncio.Lock serialises units of work, which gives the same
guarantees as a serializable store inside one event loop. Rows are never
mutated in place; every write stores a fresh copy, so a unit of work rolls
back by restoring the dict snapshots taken on entry.
"""

import asyncio
from datetime import datetime
from typing import Any

from creditledger.models.domain import (
    Account,
    FollowUp,
    IdempotencyRecord,
    IdempotencyState,
    PendingRefund,
    PendingRefundStatus,
    Reading,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from creditledger.storage.base import (
    BalanceStore,
    DuplicateKeyError,
    IdempotencyStore,
    PendingRefundStore,
    ReadingStore,
    Stores,
    TransactionLog,
    UnitOfWork,
)


class MemoryState:
    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.transactions: dict[str, Transaction] = {}
        self.lock = asyncio.Lock()


class MemoryBalanceStore(BalanceStore):
    def __init__(self, state: MemoryState):
        self._state = state

    async def get(self, account_id: str) -> Account | None:
        account = self._state.accounts.get(account_id)
        return account.model_copy() if account else None

    async def create(self, account: Account) -> Account:
        if account.account_id in self._state.accounts:
            raise DuplicateKeyError(f"account {account.account_id} exists")
        self._state.accounts[account.account_id] = account.model_copy()
        return account.model_copy()

    async def debit(self, account_id: str, amount: int) -> Account | None:
        account = self._state.accounts.get(account_id)
        if account is None or account.balance < amount:
            return None
        updated = account.model_copy(
            update={
                "balance": account.balance - amount,
                "lifetime_spent": account.lifetime_spent + amount,
                "updated_at": datetime.utcnow(),
            }
        )
        self._state.accounts[account_id] = updated
        return updated.model_copy()

    async def credit(self, account_id: str, amount: int) -> Account | None:
        account = self._state.accounts.get(account_id)
        if account is None:
            return None
        updated = account.model_copy(
            update={
                "balance": account.balance + amount,
                "lifetime_earned": account.lifetime_earned + amount,
                "updated_at": datetime.utcnow(),
            }
        )
        self._state.accounts[account_id] = updated
        return updated.model_copy()


class MemoryTransactionLog(TransactionLog):
    def __init__(self, state: MemoryState):
        self._state = state

    async def append(self, tx: Transaction) -> Transaction:
        if tx.transaction_id in self._state.transactions:
            raise DuplicateKeyError(f"transaction {tx.transaction_id} exists")
        if tx.external_reference and await self.find_by_reference(tx.external_reference):
            raise DuplicateKeyError(f"external reference {tx.external_reference} exists")
        self._state.transactions[tx.transaction_id] = tx.model_copy()
        return tx.model_copy()

    async def get(self, transaction_id: str) -> Transaction | None:
        tx = self._state.transactions.get(transaction_id)
        return tx.model_copy() if tx else None

    async def find_by_reference(self, external_reference: str) -> Transaction | None:
        for tx in self._state.transactions.values():
            if tx.external_reference == external_reference:
                return tx.model_copy()
        return None

    async def find_refund_for(self, original_transaction_id: str) -> Transaction | None:
        for tx in self._state.transactions.values():
            if tx.kind == TransactionKind.REFUND and tx.original_transaction_id == original_transaction_id:
                return tx.model_copy()
        return None

    async def transition(
        self,
        transaction_id: str,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
    ) -> Transaction | None:
        tx = self._state.transactions.get(transaction_id)
        if tx is None or tx.status != from_status:
            return None
        update: dict[str, Any] = {"status": to_status}
        if to_status == TransactionStatus.COMPLETED:
            update["completed_at"] = datetime.utcnow()
        updated = tx.model_copy(update=update)
        self._state.transactions[transaction_id] = updated
        return updated.model_copy()

    def _for_account(self, account_id: str, kind: TransactionKind | None) -> list[Transaction]:
        rows = [
            tx for tx in self._state.transactions.values()
            if tx.account_id == account_id and (kind is None or tx.kind == kind)
        ]
        rows.reverse()
        return rows

    async def list_for_account(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        kind: TransactionKind | None = None,
    ) -> list[Transaction]:
        rows = self._for_account(account_id, kind)
        return [tx.model_copy() for tx in rows[offset:offset + limit]]

    async def count_for_account(self, account_id: str, kind: TransactionKind | None = None) -> int:
        return len(self._for_account(account_id, kind))

    async def sum_completed(self, account_id: str) -> int:
        return sum(
            tx.amount for tx in self._state.transactions.values()
            if tx.account_id == account_id and tx.status == TransactionStatus.COMPLETED
        )


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, state: MemoryState):
        self._state = state
        self.balances = MemoryBalanceStore(state)
        self.transactions = MemoryTransactionLog(state)
        self._snapshot: tuple[dict, dict] | None = None

    async def __aenter__(self) -> "MemoryUnitOfWork":
        await self._state.lock.acquire()
        self._snapshot = (dict(self._state.accounts), dict(self._state.transactions))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None and self._snapshot is not None:
                self._state.accounts, self._state.transactions = self._snapshot
        finally:
            self._snapshot = None
            self._state.lock.release()


class MemoryIdempotencyStore(IdempotencyStore):
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], IdempotencyRecord] = {}

    async def claim(self, record: IdempotencyRecord) -> bool:
        ident = (record.key, record.scope)
        if ident in self.records:
            return False
        self.records[ident] = record.model_copy()
        return True

    async def get(self, key: str, scope: str) -> IdempotencyRecord | None:
        record = self.records.get((key, scope))
        return record.model_copy(deep=True) if record else None

    async def complete(
        self,
        key: str,
        scope: str,
        result: dict[str, Any],
        status_code: int,
        failed: bool = False,
    ) -> None:
        record = self.records.get((key, scope))
        if record is None:
            return
        self.records[(key, scope)] = record.model_copy(
            update={
                "state": IdempotencyState.FAILED if failed else IdempotencyState.COMPLETED,
                "result": result,
                "status_code": status_code,
                "completed_at": datetime.utcnow(),
            }
        )

    async def release(self, key: str, scope: str) -> None:
        record = self.records.get((key, scope))
        if record is not None and record.state == IdempotencyState.PENDING:
            del self.records[(key, scope)]

    async def delete_if_expired(self, key: str, scope: str, now: datetime) -> bool:
        record = self.records.get((key, scope))
        if record is not None and record.is_expired(now):
            del self.records[(key, scope)]
            return True
        return False

    async def purge_expired(self, now: datetime) -> int:
        expired = [ident for ident, record in self.records.items() if record.is_expired(now)]
        for ident in expired:
            del self.records[ident]
        return len(expired)


class MemoryPendingRefundStore(PendingRefundStore):
    def __init__(self) -> None:
        self.refunds: dict[str, PendingRefund] = {}

    async def add(self, refund: PendingRefund) -> PendingRefund:
        self.refunds[refund.refund_id] = refund.model_copy()
        return refund.model_copy()

    async def list_due(self, limit: int) -> list[PendingRefund]:
        due = [r for r in self.refunds.values() if r.status == PendingRefundStatus.OPEN]
        return [r.model_copy() for r in due[:limit]]

    async def list_open(self, limit: int = 100) -> list[PendingRefund]:
        rows = [r for r in self.refunds.values() if r.status != PendingRefundStatus.RESOLVED]
        return [r.model_copy() for r in rows[:limit]]

    async def mark_resolved(self, refund_id: str, refund_transaction_id: str) -> None:
        refund = self.refunds[refund_id]
        self.refunds[refund_id] = refund.model_copy(
            update={
                "status": PendingRefundStatus.RESOLVED,
                "refund_transaction_id": refund_transaction_id,
                "attempts": refund.attempts + 1,
                "updated_at": datetime.utcnow(),
            }
        )

    async def mark_attempt(self, refund_id: str, error: str, manual: bool = False) -> None:
        refund = self.refunds[refund_id]
        self.refunds[refund_id] = refund.model_copy(
            update={
                "status": PendingRefundStatus.MANUAL if manual else refund.status,
                "attempts": refund.attempts + 1,
                "last_error": error,
                "updated_at": datetime.utcnow(),
            }
        )


class MemoryReadingStore(ReadingStore):
    def __init__(self) -> None:
        self.readings: dict[str, Reading] = {}

    async def create(self, reading: Reading) -> Reading:
        self.readings[reading.reading_id] = reading.model_copy(deep=True)
        return reading.model_copy(deep=True)

    async def get_for_account(self, reading_id: str, account_id: str) -> Reading | None:
        reading = self.readings.get(reading_id)
        if reading is None or reading.account_id != account_id:
            return None
        return reading.model_copy(deep=True)

    async def add_follow_up(self, reading_id: str, follow_up: FollowUp) -> FollowUp:
        reading = self.readings[reading_id]
        self.readings[reading_id] = reading.model_copy(
            update={"follow_ups": [*reading.follow_ups, follow_up.model_copy()]}
        )
        return follow_up.model_copy()


def build_memory_stores() -> Stores:
    state = MemoryState()
    return Stores(
        unit_of_work=lambda: MemoryUnitOfWork(state),
        idempotency=MemoryIdempotencyStore(),
        pending_refunds=MemoryPendingRefundStore(),
        readings=MemoryReadingStore(),
    )
