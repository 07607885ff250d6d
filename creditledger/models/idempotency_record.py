from datetime import datetime
from typing import Any

import pymongo
from beanie import Document
from pydantic import Field
from pymongo import IndexModel

from creditledger.models.domain import IdempotencyRecord, IdempotencyState


class IdempotencyRecordDocument(Document):
    key: str
    scope: str  # logical operation: "deduct", "create-reading", "capture-payment", ...
    account_id: str | None = None
    request_hash: str | None = None
    state: IdempotencyState = IdempotencyState.PENDING
    result: dict[str, Any] | None = None
    status_code: int | None = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "idempotency_records"
        indexes = [
            IndexModel(
                [("key", pymongo.ASCENDING), ("scope", pymongo.ASCENDING)],
                name="key_scope_unique",
                unique=True,
            ),
            # Mongo's TTL monitor removes records once expires_at has passed
            IndexModel([("expires_at", pymongo.ASCENDING)], name="expires_at_ttl", expireAfterSeconds=0),
        ]

    def to_domain(self) -> IdempotencyRecord:
        return IdempotencyRecord.model_validate(self.model_dump(exclude={"id", "revision_id"}))

    @classmethod
    def from_domain(cls, record: IdempotencyRecord) -> "IdempotencyRecordDocument":
        return cls(**record.model_dump())
