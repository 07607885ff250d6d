from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from creditledger.models.domain import Account


class AccountDocument(Document):
    """Balance row per account; debited and credited only through the ledger."""
    account_id: Indexed(str, unique=True)
    balance: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"

    def to_domain(self) -> Account:
        return Account(
            account_id=self.account_id,
            balance=self.balance,
            lifetime_earned=self.lifetime_earned,
            lifetime_spent=self.lifetime_spent,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_domain(cls, account: Account) -> "AccountDocument":
        return cls(**account.model_dump())
