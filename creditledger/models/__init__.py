from creditledger.models.account import AccountDocument
from creditledger.models.failed_job import FailedJob
from creditledger.models.idempotency_record import IdempotencyRecordDocument
from creditledger.models.pending_refund import PendingRefundDocument
from creditledger.models.reading import ReadingDocument
from creditledger.models.transaction import TransactionDocument

__all__ = [
    "AccountDocument",
    "FailedJob",
    "IdempotencyRecordDocument",
    "PendingRefundDocument",
    "ReadingDocument",
    "TransactionDocument",
]
