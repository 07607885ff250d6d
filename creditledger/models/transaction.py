from datetime import datetime

import pymongo
from beanie import Document, Indexed
from pydantic import Field
from pymongo import IndexModel

from creditledger.models.domain import Transaction, TransactionKind, TransactionStatus


class TransactionDocument(Document):
    """Append-only ledger entry. Only status moves, and only forward."""
    transaction_id: Indexed(str, unique=True)
    account_id: str
    kind: TransactionKind
    amount: int  # positive = credit, negative = debit
    description: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    external_reference: str | None = None  # razorpay order id, etc.
    original_transaction_id: str | None = None
    payment_amount: int | None = None
    currency: str | None = None
    provider: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "transactions"
        indexes = [
            [("account_id", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)],
            IndexModel(
                [("external_reference", pymongo.ASCENDING)],
                name="external_reference_unique",
                unique=True,
                partialFilterExpression={"external_reference": {"$type": "string"}},
            ),
            IndexModel(
                [("original_transaction_id", pymongo.ASCENDING)],
                name="original_transaction_id",
                partialFilterExpression={"original_transaction_id": {"$type": "string"}},
            ),
        ]

    def to_domain(self) -> Transaction:
        return Transaction.model_validate(self.model_dump(exclude={"id", "revision_id"}))

    @classmethod
    def from_domain(cls, tx: Transaction) -> "TransactionDocument":
        return cls(**tx.model_dump())
