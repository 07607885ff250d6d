"""Service graph built once per process and passed by construction."""

from dataclasses import dataclass

from creditledger.core.config import Settings
from creditledger.services.bonuses import BonusService
from creditledger.services.gateways import PaymentGateway, RazorpayGateway
from creditledger.services.idempotency import IdempotencyGuard
from creditledger.services.ledger import CreditLedger
from creditledger.services.orchestrator import CompensatingOrchestrator
from creditledger.services.payments import PaymentService
from creditledger.services.readings import ReadingService
from creditledger.services.refunds import RefundRecovery
from creditledger.storage.base import Stores, get_stores


@dataclass
class Components:
    stores: Stores
    ledger: CreditLedger
    guard: IdempotencyGuard
    refunds: RefundRecovery
    orchestrator: CompensatingOrchestrator
    payments: PaymentService
    readings: ReadingService
    bonuses: BonusService


def wire_components(settings: Settings, stores: Stores, gateway: PaymentGateway | None = None) -> Components:
    ledger = CreditLedger(stores.unit_of_work, signup_bonus=settings.signup_bonus_credits)
    guard = IdempotencyGuard(
        stores.idempotency,
        ttl_seconds=settings.idempotency_ttl_seconds,
        wait_seconds=settings.idempotency_wait_seconds,
        poll_interval=settings.idempotency_poll_interval_seconds,
    )
    refunds = RefundRecovery(
        ledger,
        stores.pending_refunds,
        max_attempts=settings.refund_retry_max_attempts,
        batch_size=settings.refund_retry_batch_size,
    )
    orchestrator = CompensatingOrchestrator(ledger, refunds)
    return Components(
        stores=stores,
        ledger=ledger,
        guard=guard,
        refunds=refunds,
        orchestrator=orchestrator,
        payments=PaymentService(ledger, gateway or RazorpayGateway(settings), settings),
        readings=ReadingService(orchestrator, stores.readings),
        bonuses=BonusService(
            ledger,
            guard,
            daily_credits=settings.daily_bonus_credits,
            weekly_streak_credits=settings.weekly_streak_bonus_credits,
        ),
    )


async def build_components(settings: Settings) -> Components:
    return wire_components(settings, await get_stores(settings))
