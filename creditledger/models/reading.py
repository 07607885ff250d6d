from datetime import datetime

import pymongo
from beanie import Document, Indexed
from pydantic import Field

from creditledger.models.domain import CardPosition, FollowUp, Reading


class ReadingDocument(Document):
    reading_id: Indexed(str, unique=True)
    account_id: str
    spread_type: str
    interpretation_style: str = "CLASSIC"
    question: str | None = None
    cards: list[CardPosition]
    interpretation: str
    credit_cost: int
    transaction_id: str | None = None  # proof of payment
    follow_ups: list[FollowUp] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "readings"
        indexes = [[("account_id", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)]]

    def to_domain(self) -> Reading:
        return Reading.model_validate(self.model_dump(exclude={"id", "revision_id"}))

    @classmethod
    def from_domain(cls, reading: Reading) -> "ReadingDocument":
        return cls(**reading.model_dump())
