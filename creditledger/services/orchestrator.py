"""Deduct-first saga for paid operations.

The debit commits before the side effect runs, so a paid action can never be
obtained for free by making it fail after the output exists. When the side
effect fails, a compensating refund linked to the debit is attempted once;
its outcome is reported separately from the side effect's failure.

    PENDING_DEBIT -> DEBITED -> COMPLETED
                            \\-> COMPENSATED | COMPENSATION_FAILED
    PENDING_DEBIT -> ABORTED  (insufficient funds, debit failed)
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

from creditledger.core.exceptions import (
    AppError,
    CompensationFailedError,
    CreditDeductionFailedError,
    InsufficientCreditsError,
    PaidOperationFailedError,
)
from creditledger.core.logging import get_logger
from creditledger.models.domain import LedgerResult, TransactionKind
from creditledger.services.ledger import CreditLedger
from creditledger.services.refunds import RefundRecovery

log = get_logger(__name__)

T = TypeVar("T")


class OperationState(str, Enum):
    PENDING_DEBIT = "pending_debit"
    DEBITED = "debited"
    COMPLETED = "completed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"
    ABORTED = "aborted"


@dataclass
class PaidOperationResult(Generic[T]):
    value: T
    transaction_id: str
    cost: int
    new_balance: int
    state: OperationState = OperationState.COMPLETED


class CompensatingOrchestrator:
    def __init__(self, ledger: CreditLedger, refunds: RefundRecovery | None = None):
        self._ledger = ledger
        self._refunds = refunds

    async def run(
        self,
        account_id: str,
        cost: int,
        kind: TransactionKind,
        description: str,
        side_effect: Callable[[str], Awaitable[T]],
        operation: str,
    ) -> PaidOperationResult[T]:
        """Check funds, deduct, then run side_effect(transaction_id).

        Raises InsufficientCreditsError or CreditDeductionFailedError before
        any side effect; PaidOperationFailedError when the side effect failed
        and was refunded; CompensationFailedError when the refund failed too.
        """
        check = await self._ledger.check_sufficient(account_id, cost)
        if not check.sufficient:
            log.info(
                "paid_operation_rejected",
                state=OperationState.ABORTED.value,
                operation=operation,
                account_id=account_id,
                cost=cost,
                balance=check.balance,
            )
            raise InsufficientCreditsError(required=cost, balance=check.balance)

        try:
            debit = await self._ledger.deduct(account_id, cost, kind, description)
        except InsufficientCreditsError as e:
            # Funds were taken by a concurrent debit after the check passed.
            log.warning(
                "paid_operation_aborted",
                state=OperationState.ABORTED.value,
                operation=operation,
                account_id=account_id,
                cost=cost,
                code="CREDIT_DEDUCTION_FAILED",
                balance=e.balance,
            )
            raise CreditDeductionFailedError(
                f"Failed to deduct credits for {operation}",
                details={
                    "operation": operation,
                    "required": cost,
                    "balance": e.balance,
                    "retryable": True,
                },
            ) from e
        except AppError as e:
            log.warning(
                "paid_operation_aborted",
                state=OperationState.ABORTED.value,
                operation=operation,
                account_id=account_id,
                cost=cost,
                code=e.code,
            )
            raise
        log.info(
            "paid_operation_debited",
            state=OperationState.DEBITED.value,
            operation=operation,
            account_id=account_id,
            cost=cost,
            transaction_id=debit.transaction_id,
        )

        try:
            value = await side_effect(debit.transaction_id)
        except asyncio.CancelledError:
            # The debit is committed; give the credits back before propagating.
            await asyncio.shield(self._settle_cancelled(account_id, cost, description, debit, operation))
            raise
        except Exception as e:
            refund, refund_error = await self._compensate(account_id, cost, description, debit, operation, str(e))
            if refund is not None:
                raise PaidOperationFailedError(
                    f"{operation} failed; credits were refunded",
                    details={
                        "operation": operation,
                        "credits_deducted": True,
                        "refunded": True,
                        "transaction_id": debit.transaction_id,
                        "refund_transaction_id": refund.transaction_id,
                        "new_balance": refund.new_balance,
                        "error": str(e),
                    },
                ) from e
            queued = await self._queue_refund(account_id, cost, description, debit, operation, refund_error)
            raise CompensationFailedError(
                f"{operation} failed and the refund could not be completed",
                details={
                    "operation": operation,
                    "credits_deducted": True,
                    "refunded": False,
                    "refund_queued": queued,
                    "transaction_id": debit.transaction_id,
                    "amount": cost,
                    "error": str(e),
                    "refund_error": refund_error,
                },
            ) from e

        log.info(
            "paid_operation_completed",
            state=OperationState.COMPLETED.value,
            operation=operation,
            account_id=account_id,
            transaction_id=debit.transaction_id,
        )
        return PaidOperationResult(
            value=value,
            transaction_id=debit.transaction_id,
            cost=cost,
            new_balance=debit.new_balance,
        )

    async def _compensate(
        self,
        account_id: str,
        cost: int,
        description: str,
        debit: LedgerResult,
        operation: str,
        reason: str,
    ) -> tuple[LedgerResult | None, str]:
        """Refund exactly once. Returns (refund, "") or (None, refund error)."""
        log.warning(
            "paid_operation_side_effect_failed",
            operation=operation,
            account_id=account_id,
            transaction_id=debit.transaction_id,
            error=reason,
        )
        try:
            refund = await self._ledger.refund(
                account_id,
                cost,
                description,
                original_transaction_id=debit.transaction_id,
            )
        except Exception as e:
            log.critical(
                "compensating_refund_failed",
                state=OperationState.COMPENSATION_FAILED.value,
                operation=operation,
                account_id=account_id,
                amount=cost,
                original_transaction_id=debit.transaction_id,
                side_effect_error=reason,
                error=str(e),
            )
            return None, str(e)
        log.info(
            "paid_operation_compensated",
            state=OperationState.COMPENSATED.value,
            operation=operation,
            account_id=account_id,
            transaction_id=debit.transaction_id,
            refund_transaction_id=refund.transaction_id,
        )
        return refund, ""

    async def _settle_cancelled(
        self,
        account_id: str,
        cost: int,
        description: str,
        debit: LedgerResult,
        operation: str,
    ) -> None:
        refund, refund_error = await self._compensate(account_id, cost, description, debit, operation, "cancelled")
        if refund is None:
            await self._queue_refund(account_id, cost, description, debit, operation, refund_error)

    async def _queue_refund(
        self,
        account_id: str,
        cost: int,
        description: str,
        debit: LedgerResult,
        operation: str,
        error: str,
    ) -> bool:
        if self._refunds is None:
            return False
        try:
            await self._refunds.enqueue(account_id, cost, description, debit.transaction_id, operation, error)
        except Exception as e:
            log.critical(
                "refund_queue_failed",
                operation=operation,
                account_id=account_id,
                amount=cost,
                original_transaction_id=debit.transaction_id,
                error=str(e),
            )
            return False
        return True
