"""Domain models shared by services and storage backends."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return uuid.uuid4().hex


class TransactionKind(str, Enum):
    PURCHASE = "PURCHASE"
    READING = "READING"
    QUESTION = "QUESTION"
    DAILY_BONUS = "DAILY_BONUS"
    ACHIEVEMENT = "ACHIEVEMENT"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    REFUND = "REFUND"


DEBIT_KINDS = frozenset({TransactionKind.READING, TransactionKind.QUESTION})
CREDIT_KINDS = frozenset(set(TransactionKind) - DEBIT_KINDS)


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Only forward transitions; COMPLETED and FAILED are final.
ALLOWED_TRANSITIONS = {
    (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
    (TransactionStatus.PENDING, TransactionStatus.FAILED),
}


class Account(BaseModel):
    account_id: str
    balance: int = Field(default=0, ge=0)
    lifetime_earned: int = Field(default=0, ge=0)
    lifetime_spent: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Transaction(BaseModel):
    transaction_id: str = Field(default_factory=new_id)
    account_id: str
    kind: TransactionKind
    amount: int  # positive = credit, negative = debit
    description: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    external_reference: str | None = None  # provider order/session id, unique when set
    original_transaction_id: str | None = None  # set on REFUND
    payment_amount: int | None = None  # provider price in minor units
    currency: str | None = None
    provider: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None


class IdempotencyState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyRecord(BaseModel):
    key: str
    scope: str
    account_id: str | None = None
    request_hash: str | None = None
    state: IdempotencyState = IdempotencyState.PENDING
    result: dict[str, Any] | None = None
    status_code: int | None = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class PendingRefundStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    MANUAL = "manual"


class PendingRefund(BaseModel):
    refund_id: str = Field(default_factory=new_id)
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


class LedgerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    new_balance: int
    transaction_id: str


class BalanceCheck(BaseModel):
    sufficient: bool
    balance: int
    required: int


class CaptureStatus(str, Enum):
    CAPTURED = "captured"
    ALREADY_CAPTURED = "already_captured"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    AMOUNT_MISMATCH = "amount_mismatch"


class CaptureOutcome(BaseModel):
    status: CaptureStatus
    external_reference: str
    account_id: str | None = None
    credits: int = 0
    new_balance: int | None = None
    transaction_id: str | None = None

    @property
    def credited(self) -> bool:
        return self.status in (CaptureStatus.CAPTURED, CaptureStatus.ALREADY_CAPTURED)


class AccountAudit(BaseModel):
    account_id: str
    balance: int
    completed_sum: int
    drift: int
    lifetime_earned: int
    lifetime_spent: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.drift == 0


class CardPosition(BaseModel):
    card_id: int = Field(ge=0)
    position: int = Field(ge=0)
    is_reversed: bool = False


class FollowUp(BaseModel):
    follow_up_id: str = Field(default_factory=new_id)
    question: str
    answer: str
    credit_cost: int
    transaction_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Reading(BaseModel):
    reading_id: str = Field(default_factory=new_id)
    account_id: str
    spread_type: str
    interpretation_style: str = "CLASSIC"
    question: str | None = None
    cards: list[CardPosition]
    interpretation: str
    credit_cost: int
    transaction_id: str | None = None
    follow_ups: list[FollowUp] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
