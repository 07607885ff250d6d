"""Credit ledger: every balance change is one atomic unit of balance row + transaction row."""

from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from creditledger.core.exceptions import (
    AccountNotFoundError,
    AppError,
    BadRequestError,
    ConflictError,
    CreditDeductionFailedError,
    InsufficientCreditsError,
    LedgerUnavailableError,
    PaymentCaptureFailedError,
    RefundFailedError,
)
from creditledger.core.logging import get_logger
from creditledger.models.domain import (
    CREDIT_KINDS,
    DEBIT_KINDS,
    Account,
    AccountAudit,
    BalanceCheck,
    CaptureOutcome,
    CaptureStatus,
    LedgerResult,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from creditledger.services import pricing
from creditledger.storage.base import DuplicateKeyError, TransientStoreError, UnitOfWork

log = get_logger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3


def _require_kind(kind: TransactionKind, allowed: frozenset) -> None:
    if kind not in allowed:
        raise BadRequestError(f"Transaction kind not allowed here: {kind.value}", details={"kind": kind.value})


def _require_positive(amount: int) -> None:
    # bool is an int subclass; reject it along with fractions and non-positive values
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BadRequestError("Amount must be a positive integer", details={"amount": amount})


class CreditLedger:
    """The only writer of balances and transactions.

    Reads never go through a cache: every operation reads and writes inside
    its own unit of work.
    """

    def __init__(
        self,
        unit_of_work: Callable[[], UnitOfWork],
        signup_bonus: int = 0,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self._uow = unit_of_work
        self._signup_bonus = signup_bonus
        self._max_attempts = max_attempts

    async def _atomic(self, work: Callable[[UnitOfWork], Awaitable[T]], operation: str) -> T:
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._uow() as uow:
                    return await work(uow)
            except TransientStoreError as e:
                if attempt == self._max_attempts:
                    raise
                log.warning("ledger_transient_conflict", operation=operation, attempt=attempt, error=str(e))
        raise AssertionError("unreachable")

    # Reads

    @staticmethod
    def cost_of(operation_kind: str) -> int:
        return pricing.cost_of(operation_kind)

    async def get_account(self, account_id: str) -> Account:
        async def work(uow: UnitOfWork) -> Account:
            account = await uow.balances.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account

        return await self._read(work, "get_account")

    async def check_sufficient(self, account_id: str, amount: int) -> BalanceCheck:
        """Fail-fast hint only; deduct re-checks atomically."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise BadRequestError("Amount must be a non-negative integer", details={"amount": amount})
        account = await self.get_account(account_id)
        return BalanceCheck(sufficient=account.balance >= amount, balance=account.balance, required=amount)

    async def history(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        kind: TransactionKind | None = None,
    ) -> tuple[list[Transaction], int]:
        async def work(uow: UnitOfWork) -> tuple[list[Transaction], int]:
            if await uow.balances.get(account_id) is None:
                raise AccountNotFoundError(account_id)
            items = await uow.transactions.list_for_account(account_id, limit=limit, offset=offset, kind=kind)
            total = await uow.transactions.count_for_account(account_id, kind=kind)
            return items, total

        return await self._read(work, "history")

    async def verify_account(self, account_id: str) -> AccountAudit:
        """Compare the balance with the sum of completed transactions."""
        async def work(uow: UnitOfWork) -> AccountAudit:
            account = await uow.balances.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            completed = await uow.transactions.sum_completed(account_id)
            count = await uow.transactions.count_for_account(account_id)
            return AccountAudit(
                account_id=account_id,
                balance=account.balance,
                completed_sum=completed,
                drift=account.balance - completed,
                lifetime_earned=account.lifetime_earned,
                lifetime_spent=account.lifetime_spent,
                transaction_count=count,
            )

        audit = await self._read(work, "verify_account")
        if not audit.consistent:
            log.error("ledger_drift_detected", account_id=account_id, balance=audit.balance, completed_sum=audit.completed_sum)
        return audit

    async def _read(self, work: Callable[[UnitOfWork], Awaitable[T]], operation: str) -> T:
        try:
            return await self._atomic(work, operation)
        except AppError:
            raise
        except Exception as e:
            log.error("ledger_read_failed", operation=operation, error=str(e))
            raise LedgerUnavailableError(details={"operation": operation}) from e

    # Writes

    async def open_account(self, account_id: str) -> Account:
        """Create the account with the signup bonus as its first transaction."""
        bonus = self._signup_bonus

        async def work(uow: UnitOfWork) -> Account:
            account = await uow.balances.create(Account(account_id=account_id))
            if bonus > 0:
                account = await uow.balances.credit(account_id, bonus)
                await uow.transactions.append(
                    Transaction(
                        account_id=account_id,
                        kind=TransactionKind.ACHIEVEMENT,
                        amount=bonus,
                        description="Welcome bonus",
                        completed_at=datetime.utcnow(),
                    )
                )
            return account

        try:
            account = await self._atomic(work, "open_account")
        except DuplicateKeyError as e:
            raise ConflictError("Account already exists", details={"account_id": account_id}) from e
        except Exception as e:
            log.error("account_open_failed", account_id=account_id, error=str(e))
            raise LedgerUnavailableError(details={"operation": "open_account", "account_id": account_id}) from e
        log.info("account_opened", account_id=account_id, balance=account.balance)
        return account

    async def deduct(self, account_id: str, amount: int, kind: TransactionKind, description: str) -> LedgerResult:
        """Debit the account; the balance check and decrement are one conditional write."""
        _require_positive(amount)
        _require_kind(kind, DEBIT_KINDS)

        async def work(uow: UnitOfWork) -> LedgerResult:
            account = await uow.balances.debit(account_id, amount)
            if account is None:
                current = await uow.balances.get(account_id)
                if current is None:
                    raise AccountNotFoundError(account_id)
                raise InsufficientCreditsError(required=amount, balance=current.balance)
            tx = await uow.transactions.append(
                Transaction(
                    account_id=account_id,
                    kind=kind,
                    amount=-amount,
                    description=description,
                    completed_at=datetime.utcnow(),
                )
            )
            return LedgerResult(new_balance=account.balance, transaction_id=tx.transaction_id)

        try:
            result = await self._atomic(work, "deduct")
        except AppError:
            raise
        except Exception as e:
            log.error(
                "credit_deduction_failed",
                account_id=account_id,
                amount=amount,
                kind=kind.value,
                description=description,
                error=str(e),
            )
            raise CreditDeductionFailedError(
                details={"account_id": account_id, "amount": amount, "kind": kind.value, "retryable": True}
            ) from e
        log.info(
            "credits_deducted",
            account_id=account_id,
            amount=amount,
            kind=kind.value,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
        )
        return result

    async def add(self, account_id: str, amount: int, kind: TransactionKind, description: str) -> LedgerResult:
        _require_positive(amount)
        _require_kind(kind, CREDIT_KINDS)
        result = await self._credit(account_id, amount, kind, description, operation="add")
        log.info(
            "credits_added",
            account_id=account_id,
            amount=amount,
            kind=kind.value,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
        )
        return result

    async def _credit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        description: str,
        operation: str,
    ) -> LedgerResult:
        async def work(uow: UnitOfWork) -> LedgerResult:
            account = await uow.balances.credit(account_id, amount)
            if account is None:
                raise AccountNotFoundError(account_id)
            tx = await uow.transactions.append(
                Transaction(
                    account_id=account_id,
                    kind=kind,
                    amount=amount,
                    description=description,
                    completed_at=datetime.utcnow(),
                )
            )
            return LedgerResult(new_balance=account.balance, transaction_id=tx.transaction_id)

        try:
            return await self._atomic(work, operation)
        except AppError:
            raise
        except Exception as e:
            log.error("credit_add_failed", account_id=account_id, amount=amount, kind=kind.value, error=str(e))
            raise LedgerUnavailableError(
                details={"operation": operation, "account_id": account_id, "amount": amount, "kind": kind.value}
            ) from e

    async def refund(
        self,
        account_id: str,
        amount: int,
        description: str,
        original_transaction_id: str | None = None,
    ) -> LedgerResult:
        """Credit back a failed paid operation as a new REFUND entry.

        A missing original only logs a warning: refunding without a perfect
        audit link beats keeping the user's credits. A second refund for the
        same original returns the first one instead of crediting again.
        """
        _require_positive(amount)

        async def work(uow: UnitOfWork) -> tuple[LedgerResult, bool]:
            if original_transaction_id:
                previous = await uow.transactions.find_refund_for(original_transaction_id)
                if previous is not None and previous.account_id == account_id:
                    account = await uow.balances.get(account_id)
                    return LedgerResult(new_balance=account.balance, transaction_id=previous.transaction_id), True
                original = await uow.transactions.get(original_transaction_id)
                if original is None or original.account_id != account_id:
                    log.warning(
                        "refund_original_missing",
                        account_id=account_id,
                        amount=amount,
                        original_transaction_id=original_transaction_id,
                    )
                elif original.amount >= 0:
                    log.warning(
                        "refund_original_not_debit",
                        account_id=account_id,
                        original_transaction_id=original_transaction_id,
                        original_amount=original.amount,
                    )
            account = await uow.balances.credit(account_id, amount)
            if account is None:
                raise AccountNotFoundError(account_id)
            tx = await uow.transactions.append(
                Transaction(
                    account_id=account_id,
                    kind=TransactionKind.REFUND,
                    amount=amount,
                    description=f"Refund: {description}",
                    original_transaction_id=original_transaction_id,
                    completed_at=datetime.utcnow(),
                )
            )
            return LedgerResult(new_balance=account.balance, transaction_id=tx.transaction_id), False

        try:
            result, already = await self._atomic(work, "refund")
        except AppError:
            raise
        except Exception as e:
            log.error(
                "refund_failed",
                account_id=account_id,
                amount=amount,
                original_transaction_id=original_transaction_id,
                error=str(e),
            )
            raise RefundFailedError(
                details={
                    "account_id": account_id,
                    "amount": amount,
                    "original_transaction_id": original_transaction_id,
                }
            ) from e
        log.info(
            "refund_already_applied" if already else "credits_refunded",
            account_id=account_id,
            amount=amount,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
            original_transaction_id=original_transaction_id,
        )
        return result

    async def adjust(self, account_id: str, amount: int, reason: str) -> LedgerResult:
        """Admin adjustment: positive amounts credit, negative debit."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise BadRequestError("Amount cannot be zero", details={"amount": amount})
        description = f"Admin adjustment: {reason}"
        if amount > 0:
            return await self.add(account_id, amount, TransactionKind.REFUND, description)
        return await self.deduct(account_id, -amount, TransactionKind.READING, description)

    # Purchases

    async def open_purchase(
        self,
        account_id: str,
        credits: int,
        external_reference: str,
        description: str,
        payment_amount: int,
        currency: str,
        provider: str,
    ) -> Transaction:
        """Record a PENDING purchase keyed by the provider order id. Balance is untouched."""
        _require_positive(credits)

        async def work(uow: UnitOfWork) -> Transaction:
            if await uow.balances.get(account_id) is None:
                raise AccountNotFoundError(account_id)
            return await uow.transactions.append(
                Transaction(
                    account_id=account_id,
                    kind=TransactionKind.PURCHASE,
                    amount=credits,
                    description=description,
                    status=TransactionStatus.PENDING,
                    external_reference=external_reference,
                    payment_amount=payment_amount,
                    currency=currency.upper(),
                    provider=provider,
                )
            )

        try:
            tx = await self._atomic(work, "open_purchase")
        except DuplicateKeyError as e:
            raise ConflictError("Payment order already recorded", details={"external_reference": external_reference}) from e
        except AppError:
            raise
        except Exception as e:
            log.error("purchase_open_failed", account_id=account_id, external_reference=external_reference, error=str(e))
            raise LedgerUnavailableError(details={"operation": "open_purchase"}) from e
        log.info(
            "purchase_pending",
            account_id=account_id,
            credits=credits,
            external_reference=external_reference,
            transaction_id=tx.transaction_id,
        )
        return tx

    async def settle_purchase(
        self,
        external_reference: str,
        paid_amount: int | None = None,
        currency: str | None = None,
        account_id: str | None = None,
    ) -> CaptureOutcome:
        """Capture reconciliation keyed by the provider's order id.

        Completing the pending row and crediting the balance happen in one
        unit of work; a row that is already COMPLETED (or missing) is reported
        as-is without touching the balance.
        """
        async def work(uow: UnitOfWork) -> CaptureOutcome:
            tx = await uow.transactions.find_by_reference(external_reference)
            if tx is None or tx.kind != TransactionKind.PURCHASE or (account_id and tx.account_id != account_id):
                return CaptureOutcome(status=CaptureStatus.NOT_FOUND, external_reference=external_reference)
            if tx.status != TransactionStatus.PENDING:
                return await self._recorded_outcome(uow, tx)
            mismatch = paid_amount is not None and tx.payment_amount is not None and paid_amount != tx.payment_amount
            if currency and tx.currency and currency.upper() != tx.currency.upper():
                mismatch = True
            if mismatch:
                await uow.transactions.transition(tx.transaction_id, TransactionStatus.PENDING, TransactionStatus.FAILED)
                return CaptureOutcome(
                    status=CaptureStatus.AMOUNT_MISMATCH,
                    external_reference=external_reference,
                    account_id=tx.account_id,
                    transaction_id=tx.transaction_id,
                )
            settled = await uow.transactions.transition(
                tx.transaction_id, TransactionStatus.PENDING, TransactionStatus.COMPLETED
            )
            if settled is None:
                current = await uow.transactions.get(tx.transaction_id)
                return await self._recorded_outcome(uow, current)
            account = await uow.balances.credit(tx.account_id, tx.amount)
            if account is None:
                raise AccountNotFoundError(tx.account_id)
            return CaptureOutcome(
                status=CaptureStatus.CAPTURED,
                external_reference=external_reference,
                account_id=tx.account_id,
                credits=tx.amount,
                new_balance=account.balance,
                transaction_id=tx.transaction_id,
            )

        try:
            outcome = await self._atomic(work, "settle_purchase")
        except AppError:
            raise
        except Exception as e:
            log.error("payment_capture_failed", external_reference=external_reference, error=str(e))
            raise PaymentCaptureFailedError(details={"external_reference": external_reference}) from e
        if outcome.status == CaptureStatus.AMOUNT_MISMATCH:
            log.error(
                "payment_amount_mismatch",
                external_reference=external_reference,
                paid_amount=paid_amount,
                currency=currency,
            )
        else:
            log.info(
                "purchase_settled",
                status=outcome.status.value,
                external_reference=external_reference,
                account_id=outcome.account_id,
                credits=outcome.credits,
                new_balance=outcome.new_balance,
            )
        return outcome

    @staticmethod
    async def _recorded_outcome(uow: UnitOfWork, tx: Transaction) -> CaptureOutcome:
        if tx.status == TransactionStatus.COMPLETED:
            account = await uow.balances.get(tx.account_id)
            return CaptureOutcome(
                status=CaptureStatus.ALREADY_CAPTURED,
                external_reference=tx.external_reference,
                account_id=tx.account_id,
                credits=tx.amount,
                new_balance=account.balance if account else None,
                transaction_id=tx.transaction_id,
            )
        return CaptureOutcome(
            status=CaptureStatus.FAILED,
            external_reference=tx.external_reference,
            account_id=tx.account_id,
            transaction_id=tx.transaction_id,
        )

    async def fail_purchase(self, external_reference: str) -> CaptureOutcome:
        async def work(uow: UnitOfWork) -> CaptureOutcome:
            tx = await uow.transactions.find_by_reference(external_reference)
            if tx is None or tx.kind != TransactionKind.PURCHASE:
                return CaptureOutcome(status=CaptureStatus.NOT_FOUND, external_reference=external_reference)
            if tx.status == TransactionStatus.PENDING:
                tx = await uow.transactions.transition(
                    tx.transaction_id, TransactionStatus.PENDING, TransactionStatus.FAILED
                ) or await uow.transactions.get(tx.transaction_id)
            return await self._recorded_outcome(uow, tx)

        try:
            outcome = await self._atomic(work, "fail_purchase")
        except AppError:
            raise
        except Exception as e:
            log.error("purchase_fail_mark_failed", external_reference=external_reference, error=str(e))
            raise PaymentCaptureFailedError(details={"external_reference": external_reference}) from e
        log.info("purchase_failed", external_reference=external_reference, status=outcome.status.value)
        return outcome
