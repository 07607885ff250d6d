"""Compensating refunds that failed inline and wait for the retry job."""

from datetime import datetime

import pymongo
from beanie import Document, Indexed
from pydantic import Field

from creditledger.models.domain import PendingRefund, PendingRefundStatus


class PendingRefundDocument(Document):
    refund_id: Indexed(str, unique=True)
    account_id: str
    amount: int
    description: str
    original_transaction_id: str | None = None
    operation: str = ""
    status: PendingRefundStatus = PendingRefundStatus.OPEN
    attempts: int = 0
    last_error: str = ""
    refund_transaction_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "pending_refunds"
        indexes = [[("status", pymongo.ASCENDING), ("created_at", pymongo.ASCENDING)]]

    def to_domain(self) -> PendingRefund:
        return PendingRefund.model_validate(self.model_dump(exclude={"id", "revision_id"}))

    @classmethod
    def from_domain(cls, refund: PendingRefund) -> "PendingRefundDocument":
        return cls(**refund.model_dump())
