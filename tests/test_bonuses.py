from datetime import date, datetime, time, timedelta

import pytest

from creditledger.core.exceptions import ConflictError
from creditledger.models.domain import Transaction, TransactionKind


async def _seed_claims(stores, account_id, days):
    """Backdated DAILY_BONUS rows, as left behind by earlier claims."""
    async with stores.unit_of_work() as uow:
        for day in days:
            await uow.transactions.append(
                Transaction(
                    account_id=account_id,
                    kind=TransactionKind.DAILY_BONUS,
                    amount=2,
                    description="Daily login bonus",
                    created_at=datetime.combine(day, time(9, 30)),
                )
            )


async def test_first_claim(components, ledger, make_account):
    account_id = await make_account(balance=3)

    result = await components.bonuses.claim_daily_bonus(account_id, today=date(2026, 3, 10))

    assert result["credits_awarded"] == 2
    assert result["streak"] == 1
    assert result["new_balance"] == 5
    assert (await ledger.get_account(account_id)).balance == 5


async def test_second_claim_same_day_conflicts(components, ledger, make_account):
    account_id = await make_account(balance=3)
    today = date(2026, 3, 10)
    await components.bonuses.claim_daily_bonus(account_id, today=today)

    with pytest.raises(ConflictError):
        await components.bonuses.claim_daily_bonus(account_id, today=today)

    assert (await ledger.get_account(account_id)).balance == 5


async def test_seventh_consecutive_day_adds_weekly_bonus(components, stores, make_account):
    account_id = await make_account(balance=3)
    today = date(2026, 3, 10)
    await _seed_claims(stores, account_id, [today - timedelta(days=n) for n in range(6, 0, -1)])

    result = await components.bonuses.claim_daily_bonus(account_id, today=today)

    assert result["streak"] == 7
    assert result["credits_awarded"] == 7


async def test_gap_resets_streak(components, stores, make_account):
    account_id = await make_account(balance=3)
    today = date(2026, 3, 10)
    await _seed_claims(stores, account_id, [today - timedelta(days=n) for n in (5, 4, 3)])

    result = await components.bonuses.claim_daily_bonus(account_id, today=today)

    assert result["streak"] == 1
    assert result["credits_awarded"] == 2


async def test_claim_already_in_ledger_conflicts(components, stores, make_account):
    account_id = await make_account(balance=3)
    today = datetime.utcnow().date()
    await _seed_claims(stores, account_id, [today])

    with pytest.raises(ConflictError):
        await components.bonuses.claim_daily_bonus(account_id, today=today)
