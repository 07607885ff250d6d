"""Daily login bonus with a weekly streak reward."""

from datetime import date, datetime, timedelta
from typing import Any

from creditledger.core.exceptions import ConflictError
from creditledger.core.logging import get_logger
from creditledger.models.domain import TransactionKind
from creditledger.services.idempotency import IdempotencyGuard
from creditledger.services.ledger import CreditLedger

log = get_logger(__name__)

DAILY_BONUS_SCOPE = "daily-bonus"
STREAK_LENGTH = 7
_PAGE = 100


class BonusService:
    def __init__(
        self,
        ledger: CreditLedger,
        guard: IdempotencyGuard,
        daily_credits: int = 2,
        weekly_streak_credits: int = 5,
    ):
        self._ledger = ledger
        self._guard = guard
        self._daily = daily_credits
        self._weekly = weekly_streak_credits

    async def claim_daily_bonus(self, account_id: str, today: date | None = None) -> dict[str, Any]:
        """Award the bonus once per UTC day; the (account, date) pair is the idempotency key."""
        today = today or datetime.utcnow().date()

        async def award() -> dict[str, Any]:
            streak = await self._streak_before(account_id, today) + 1
            credits = self._daily + (self._weekly if streak % STREAK_LENGTH == 0 else 0)
            result = await self._ledger.add(
                account_id,
                credits,
                TransactionKind.DAILY_BONUS,
                f"Daily login bonus ({streak} day streak)",
            )
            return {
                "credits_awarded": credits,
                "new_balance": result.new_balance,
                "streak": streak,
                "transaction_id": result.transaction_id,
                "date": today.isoformat(),
            }

        guarded = await self._guard.run(
            f"{account_id}:{today.isoformat()}",
            DAILY_BONUS_SCOPE,
            award,
            account_id=account_id,
        )
        if guarded.replayed:
            raise ConflictError("Daily bonus already claimed for today", details={"date": today.isoformat()})
        log.info("daily_bonus_claimed", account_id=account_id, **guarded.body)
        return guarded.body

    async def _streak_before(self, account_id: str, today: date) -> int:
        """Consecutive claimed days ending yesterday, from the DAILY_BONUS transactions."""
        expected = today - timedelta(days=1)
        streak = 0
        offset = 0
        while True:
            items, _ = await self._ledger.history(
                account_id, limit=_PAGE, offset=offset, kind=TransactionKind.DAILY_BONUS
            )
            for tx in items:
                day = tx.created_at.date()
                if day >= today:
                    if day == today:
                        raise ConflictError("Daily bonus already claimed for today", details={"date": today.isoformat()})
                    continue
                if day == expected:
                    streak += 1
                    expected -= timedelta(days=1)
                elif day < expected:
                    return streak
            if len(items) < _PAGE:
                return streak
            offset += _PAGE
