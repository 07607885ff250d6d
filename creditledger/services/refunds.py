"""Out-of-band recovery of compensating refunds that failed inline."""

from creditledger.core.exceptions import AccountNotFoundError
from creditledger.core.logging import get_logger
from creditledger.models.domain import PendingRefund
from creditledger.services.ledger import CreditLedger
from creditledger.storage.base import PendingRefundStore

log = get_logger(__name__)


class RefundRecovery:
    def __init__(
        self,
        ledger: CreditLedger,
        store: PendingRefundStore,
        max_attempts: int = 5,
        batch_size: int = 50,
    ):
        self._ledger = ledger
        self._store = store
        self._max_attempts = max_attempts
        self._batch_size = batch_size

    async def enqueue(
        self,
        account_id: str,
        amount: int,
        description: str,
        original_transaction_id: str | None,
        operation: str,
        error: str,
    ) -> PendingRefund:
        refund = await self._store.add(
            PendingRefund(
                account_id=account_id,
                amount=amount,
                description=description,
                original_transaction_id=original_transaction_id,
                operation=operation,
                last_error=error,
            )
        )
        log.warning(
            "refund_queued",
            refund_id=refund.refund_id,
            account_id=account_id,
            amount=amount,
            original_transaction_id=original_transaction_id,
            operation=operation,
        )
        return refund

    async def list_open(self, limit: int = 100) -> list[PendingRefund]:
        return await self._store.list_open(limit)

    async def retry_due(self) -> dict[str, int]:
        """Retry queued refunds. Safe to run concurrently with itself: refunds are idempotent per original."""
        summary = {"resolved": 0, "retrying": 0, "manual": 0}
        for refund in await self._store.list_due(self._batch_size):
            try:
                result = await self._ledger.refund(
                    refund.account_id,
                    refund.amount,
                    refund.description,
                    original_transaction_id=refund.original_transaction_id,
                )
            except Exception as e:
                attempts = refund.attempts + 1
                manual = isinstance(e, AccountNotFoundError) or attempts >= self._max_attempts
                await self._store.mark_attempt(refund.refund_id, str(e), manual=manual)
                if manual:
                    summary["manual"] += 1
                    log.critical(
                        "refund_needs_manual_reconciliation",
                        refund_id=refund.refund_id,
                        account_id=refund.account_id,
                        amount=refund.amount,
                        original_transaction_id=refund.original_transaction_id,
                        operation=refund.operation,
                        attempts=attempts,
                        error=str(e),
                    )
                else:
                    summary["retrying"] += 1
                    log.warning("refund_retry_failed", refund_id=refund.refund_id, attempts=attempts, error=str(e))
                continue
            await self._store.mark_resolved(refund.refund_id, result.transaction_id)
            summary["resolved"] += 1
            log.info(
                "refund_recovered",
                refund_id=refund.refund_id,
                account_id=refund.account_id,
                amount=refund.amount,
                transaction_id=result.transaction_id,
            )
        return summary
