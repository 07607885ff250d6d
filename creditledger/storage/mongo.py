"""Beanie/Motor backend. Units of work run inside Mongo multi-document transactions."""

from datetime import datetime
from typing import Any

from beanie import UpdateResponse
from beanie.operators import Inc, Set
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession
from pymongo.errors import DuplicateKeyError as MongoDuplicateKeyError
from pymongo.errors import PyMongoError

from creditledger.core.config import Settings
from creditledger.core.logging import get_logger
from creditledger.models.account import AccountDocument
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
from creditledger.models.idempotency_record import IdempotencyRecordDocument
from creditledger.models.pending_refund import PendingRefundDocument
from creditledger.models.reading import ReadingDocument
from creditledger.models.transaction import TransactionDocument
from creditledger.storage.base import (
    BalanceStore,
    DuplicateKeyError,
    IdempotencyStore,
    PendingRefundStore,
    ReadingStore,
    Stores,
    TransactionLog,
    TransientStoreError,
    UnitOfWork,
)

log = get_logger(__name__)

COMMIT_RETRIES = 3


class MongoBalanceStore(BalanceStore):
    def __init__(self, session: AsyncIOMotorClientSession | None = None):
        self._session = session

    async def get(self, account_id: str) -> Account | None:
        doc = await AccountDocument.find_one(AccountDocument.account_id == account_id, session=self._session)
        return doc.to_domain() if doc else None

    async def create(self, account: Account) -> Account:
        doc = AccountDocument.from_domain(account)
        try:
            await doc.insert(session=self._session)
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(f"account {account.account_id} exists") from e
        return doc.to_domain()

    async def debit(self, account_id: str, amount: int) -> Account | None:
        # Filter and $inc in one findAndModify: two debits can never both see the old balance
        doc = await AccountDocument.find_one(
            AccountDocument.account_id == account_id,
            AccountDocument.balance >= amount,
            session=self._session,
        ).update(
            Inc({AccountDocument.balance: -amount, AccountDocument.lifetime_spent: amount}),
            Set({AccountDocument.updated_at: datetime.utcnow()}),
            session=self._session,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        return doc.to_domain() if doc else None

    async def credit(self, account_id: str, amount: int) -> Account | None:
        doc = await AccountDocument.find_one(
            AccountDocument.account_id == account_id,
            session=self._session,
        ).update(
            Inc({AccountDocument.balance: amount, AccountDocument.lifetime_earned: amount}),
            Set({AccountDocument.updated_at: datetime.utcnow()}),
            session=self._session,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        return doc.to_domain() if doc else None


class MongoTransactionLog(TransactionLog):
    def __init__(self, session: AsyncIOMotorClientSession | None = None):
        self._session = session

    async def append(self, tx: Transaction) -> Transaction:
        doc = TransactionDocument.from_domain(tx)
        try:
            await doc.insert(session=self._session)
        except MongoDuplicateKeyError as e:
            raise DuplicateKeyError(f"transaction {tx.transaction_id} / {tx.external_reference} exists") from e
        return doc.to_domain()

    async def get(self, transaction_id: str) -> Transaction | None:
        doc = await TransactionDocument.find_one(
            TransactionDocument.transaction_id == transaction_id, session=self._session
        )
        return doc.to_domain() if doc else None

    async def find_by_reference(self, external_reference: str) -> Transaction | None:
        doc = await TransactionDocument.find_one(
            TransactionDocument.external_reference == external_reference, session=self._session
        )
        return doc.to_domain() if doc else None

    async def find_refund_for(self, original_transaction_id: str) -> Transaction | None:
        doc = await TransactionDocument.find_one(
            TransactionDocument.original_transaction_id == original_transaction_id,
            TransactionDocument.kind == TransactionKind.REFUND,
            session=self._session,
        )
        return doc.to_domain() if doc else None

    async def transition(
        self,
        transaction_id: str,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
    ) -> Transaction | None:
        changes: dict[Any, Any] = {TransactionDocument.status: to_status}
        if to_status == TransactionStatus.COMPLETED:
            changes[TransactionDocument.completed_at] = datetime.utcnow()
        doc = await TransactionDocument.find_one(
            TransactionDocument.transaction_id == transaction_id,
            TransactionDocument.status == from_status,
            session=self._session,
        ).update(
            Set(changes),
            session=self._session,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        return doc.to_domain() if doc else None

    def _query(self, account_id: str, kind: TransactionKind | None):
        criteria = [TransactionDocument.account_id == account_id]
        if kind is not None:
            criteria.append(TransactionDocument.kind == kind)
        return TransactionDocument.find(*criteria, session=self._session)

    async def list_for_account(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        kind: TransactionKind | None = None,
    ) -> list[Transaction]:
        docs = (
            await self._query(account_id, kind)
            .sort(-TransactionDocument.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [d.to_domain() for d in docs]

    async def count_for_account(self, account_id: str, kind: TransactionKind | None = None) -> int:
        return await self._query(account_id, kind).count()

    async def sum_completed(self, account_id: str) -> int:
        total = await TransactionDocument.find(
            TransactionDocument.account_id == account_id,
            TransactionDocument.status == TransactionStatus.COMPLETED,
            session=self._session,
        ).sum(TransactionDocument.amount, session=self._session)
        return int(total or 0)


class MongoUnitOfWork(UnitOfWork):
    def __init__(self, client: AsyncIOMotorClient, use_transactions: bool = True):
        self._client = client
        self._use_transactions = use_transactions
        self._session: AsyncIOMotorClientSession | None = None

    async def __aenter__(self) -> "MongoUnitOfWork":
        self._session = await self._client.start_session()
        if self._use_transactions:
            self._session.start_transaction()
        self.balances = MongoBalanceStore(self._session)
        self.transactions = MongoTransactionLog(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        session = self._session
        try:
            if not self._use_transactions:
                return
            if exc_type is not None:
                if session.in_transaction:
                    await session.abort_transaction()
                if isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError"):
                    raise TransientStoreError(str(exc)) from exc
                return
            await self._commit(session)
        finally:
            await session.end_session()
            self._session = None

    async def _commit(self, session: AsyncIOMotorClientSession) -> None:
        for attempt in range(COMMIT_RETRIES):
            try:
                await session.commit_transaction()
                return
            except PyMongoError as e:
                if e.has_error_label("UnknownTransactionCommitResult") and attempt + 1 < COMMIT_RETRIES:
                    log.warning("commit_result_unknown", attempt=attempt + 1, error=str(e))
                    continue
                if e.has_error_label("TransientTransactionError"):
                    raise TransientStoreError(str(e)) from e
                raise


class MongoIdempotencyStore(IdempotencyStore):
    async def claim(self, record: IdempotencyRecord) -> bool:
        try:
            await IdempotencyRecordDocument.from_domain(record).insert()
        except MongoDuplicateKeyError:
            return False
        return True

    def _find(self, key: str, scope: str):
        return IdempotencyRecordDocument.find_one(
            IdempotencyRecordDocument.key == key,
            IdempotencyRecordDocument.scope == scope,
        )

    async def get(self, key: str, scope: str) -> IdempotencyRecord | None:
        doc = await self._find(key, scope)
        return doc.to_domain() if doc else None

    async def complete(
        self,
        key: str,
        scope: str,
        result: dict[str, Any],
        status_code: int,
        failed: bool = False,
    ) -> None:
        await self._find(key, scope).update(
            Set({
                IdempotencyRecordDocument.state: IdempotencyState.FAILED if failed else IdempotencyState.COMPLETED,
                IdempotencyRecordDocument.result: result,
                IdempotencyRecordDocument.status_code: status_code,
                IdempotencyRecordDocument.completed_at: datetime.utcnow(),
            })
        )

    async def release(self, key: str, scope: str) -> None:
        await IdempotencyRecordDocument.find_one(
            IdempotencyRecordDocument.key == key,
            IdempotencyRecordDocument.scope == scope,
            IdempotencyRecordDocument.state == IdempotencyState.PENDING,
        ).delete()

    async def delete_if_expired(self, key: str, scope: str, now: datetime) -> bool:
        result = await IdempotencyRecordDocument.find_one(
            IdempotencyRecordDocument.key == key,
            IdempotencyRecordDocument.scope == scope,
            IdempotencyRecordDocument.expires_at <= now,
        ).delete()
        return bool(result and result.deleted_count)

    async def purge_expired(self, now: datetime) -> int:
        result = await IdempotencyRecordDocument.find(IdempotencyRecordDocument.expires_at <= now).delete()
        return result.deleted_count if result else 0


class MongoPendingRefundStore(PendingRefundStore):
    async def add(self, refund: PendingRefund) -> PendingRefund:
        doc = PendingRefundDocument.from_domain(refund)
        await doc.insert()
        return doc.to_domain()

    async def list_due(self, limit: int) -> list[PendingRefund]:
        docs = (
            await PendingRefundDocument.find(PendingRefundDocument.status == PendingRefundStatus.OPEN)
            .sort(+PendingRefundDocument.created_at)
            .limit(limit)
            .to_list()
        )
        return [d.to_domain() for d in docs]

    async def list_open(self, limit: int = 100) -> list[PendingRefund]:
        docs = (
            await PendingRefundDocument.find(PendingRefundDocument.status != PendingRefundStatus.RESOLVED)
            .sort(+PendingRefundDocument.created_at)
            .limit(limit)
            .to_list()
        )
        return [d.to_domain() for d in docs]

    async def mark_resolved(self, refund_id: str, refund_transaction_id: str) -> None:
        await PendingRefundDocument.find_one(PendingRefundDocument.refund_id == refund_id).update(
            Set({
                PendingRefundDocument.status: PendingRefundStatus.RESOLVED,
                PendingRefundDocument.refund_transaction_id: refund_transaction_id,
                PendingRefundDocument.updated_at: datetime.utcnow(),
            }),
            Inc({PendingRefundDocument.attempts: 1}),
        )

    async def mark_attempt(self, refund_id: str, error: str, manual: bool = False) -> None:
        changes: dict[Any, Any] = {
            PendingRefundDocument.last_error: error,
            PendingRefundDocument.updated_at: datetime.utcnow(),
        }
        if manual:
            changes[PendingRefundDocument.status] = PendingRefundStatus.MANUAL
        await PendingRefundDocument.find_one(PendingRefundDocument.refund_id == refund_id).update(
            Set(changes),
            Inc({PendingRefundDocument.attempts: 1}),
        )


class MongoReadingStore(ReadingStore):
    async def create(self, reading: Reading) -> Reading:
        doc = ReadingDocument.from_domain(reading)
        await doc.insert()
        return doc.to_domain()

    async def get_for_account(self, reading_id: str, account_id: str) -> Reading | None:
        doc = await ReadingDocument.find_one(
            ReadingDocument.reading_id == reading_id,
            ReadingDocument.account_id == account_id,
        )
        return doc.to_domain() if doc else None

    async def add_follow_up(self, reading_id: str, follow_up: FollowUp) -> FollowUp:
        doc = await ReadingDocument.find_one(ReadingDocument.reading_id == reading_id)
        if doc is None:
            raise LookupError(f"reading {reading_id} not found")
        doc.follow_ups.append(follow_up)
        await doc.save()
        return follow_up


async def build_mongo_stores(settings: Settings) -> Stores:
    from creditledger.db.init import init_db
    client = await init_db(settings)
    if not settings.mongodb_transactions:
        log.warning("mongo_transactions_disabled", msg="balance and transaction writes are not atomic together")
    return Stores(
        unit_of_work=lambda: MongoUnitOfWork(client, use_transactions=settings.mongodb_transactions),
        idempotency=MongoIdempotencyStore(),
        pending_refunds=MongoPendingRefundStore(),
        readings=MongoReadingStore(),
    )
