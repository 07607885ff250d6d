"""Storage contracts for the ledger. Backends: Beanie/Mongo and in-memory."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from creditledger.core.config import Settings
from creditledger.models.domain import (
    Account,
    IdempotencyRecord,
    PendingRefund,
    Reading,
    FollowUp,
    Transaction,
    TransactionKind,
    TransactionStatus,
)


class StoreError(Exception):
    """Base for storage-level failures."""


class DuplicateKeyError(StoreError):
    """A unique constraint rejected the write (account id, external reference, ...)."""


class TransientStoreError(StoreError):
    """Write conflict or similar; the whole unit of work may be retried."""


class BalanceStore(ABC):
    @abstractmethod
    async def get(self, account_id: str) -> Account | None:
        ...

    @abstractmethod
    async def create(self, account: Account) -> Account:
        """Insert a new account; DuplicateKeyError if the id exists."""
        ...

    @abstractmethod
    async def debit(self, account_id: str, amount: int) -> Account | None:
        """Atomically subtract amount iff balance >= amount; bump lifetime_spent.

        Returns the updated account, or None when the account is missing or
        the balance is too low. The condition and the decrement are one write.
        """
        ...

    @abstractmethod
    async def credit(self, account_id: str, amount: int) -> Account | None:
        """Atomically add amount and bump lifetime_earned. None if missing."""
        ...


class TransactionLog(ABC):
    @abstractmethod
    async def append(self, tx: Transaction) -> Transaction:
        """Insert; DuplicateKeyError when external_reference is already used."""
        ...

    @abstractmethod
    async def get(self, transaction_id: str) -> Transaction | None:
        ...

    @abstractmethod
    async def find_by_reference(self, external_reference: str) -> Transaction | None:
        ...

    @abstractmethod
    async def find_refund_for(self, original_transaction_id: str) -> Transaction | None:
        ...

    @abstractmethod
    async def transition(
        self,
        transaction_id: str,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
    ) -> Transaction | None:
        """Compare-and-set status. None if the row was not in from_status."""
        ...

    @abstractmethod
    async def list_for_account(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        kind: TransactionKind | None = None,
    ) -> list[Transaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_for_account(self, account_id: str, kind: TransactionKind | None = None) -> int:
        ...

    @abstractmethod
    async def sum_completed(self, account_id: str) -> int:
        ...


class UnitOfWork(ABC):
    """Balance and transaction writes that commit or roll back together.

    Usage::

        async with uow_factory() as uow:
            await uow.balances.debit(...)
            await uow.transactions.append(...)
    """

    balances: BalanceStore
    transactions: TransactionLog

    @abstractmethod
    async def __aenter__(self) -> "UnitOfWork":
        ...

    @abstractmethod
    async def __aexit__(self, exc_type, exc, tb) -> None:
        ...


class IdempotencyStore(ABC):
    @abstractmethod
    async def claim(self, record: IdempotencyRecord) -> bool:
        """Insert a pending record. False if (key, scope) already exists."""
        ...

    @abstractmethod
    async def get(self, key: str, scope: str) -> IdempotencyRecord | None:
        ...

    @abstractmethod
    async def complete(
        self,
        key: str,
        scope: str,
        result: dict[str, Any],
        status_code: int,
        failed: bool = False,
    ) -> None:
        ...

    @abstractmethod
    async def release(self, key: str, scope: str) -> None:
        """Drop a pending record so the key can be used again."""
        ...

    @abstractmethod
    async def delete_if_expired(self, key: str, scope: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        ...


class PendingRefundStore(ABC):
    @abstractmethod
    async def add(self, refund: PendingRefund) -> PendingRefund:
        ...

    @abstractmethod
    async def list_due(self, limit: int) -> list[PendingRefund]:
        """Open refunds, oldest first."""
        ...

    @abstractmethod
    async def list_open(self, limit: int = 100) -> list[PendingRefund]:
        """Open and manual refunds, oldest first."""
        ...

    @abstractmethod
    async def mark_resolved(self, refund_id: str, refund_transaction_id: str) -> None:
        ...

    @abstractmethod
    async def mark_attempt(self, refund_id: str, error: str, manual: bool = False) -> None:
        ...


class ReadingStore(ABC):
    @abstractmethod
    async def create(self, reading: Reading) -> Reading:
        ...

    @abstractmethod
    async def get_for_account(self, reading_id: str, account_id: str) -> Reading | None:
        ...

    @abstractmethod
    async def add_follow_up(self, reading_id: str, follow_up: FollowUp) -> FollowUp:
        ...


@dataclass
class Stores:
    unit_of_work: Callable[[], UnitOfWork]
    idempotency: IdempotencyStore
    pending_refunds: PendingRefundStore
    readings: ReadingStore


async def get_stores(settings: Settings) -> Stores:
    if settings.store_backend == "memory":
        from creditledger.storage.memory import build_memory_stores
        return build_memory_stores()
    from creditledger.storage.mongo import build_mongo_stores
    return await build_mongo_stores(settings)
