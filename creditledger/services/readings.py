"""Paid tarot operations: readings and follow-up questions."""

from creditledger.core.exceptions import BadRequestError, NotFoundError
from creditledger.core.logging import get_logger
from creditledger.models.domain import CardPosition, FollowUp, Reading, TransactionKind
from creditledger.services import pricing
from creditledger.services.orchestrator import CompensatingOrchestrator, PaidOperationResult
from creditledger.storage.base import ReadingStore

log = get_logger(__name__)

MAX_FOLLOW_UP_LENGTH = 1000
MAX_QUESTION_LENGTH = 2000


class ReadingService:
    def __init__(self, orchestrator: CompensatingOrchestrator, store: ReadingStore):
        self._orchestrator = orchestrator
        self._store = store

    async def create_reading(
        self,
        account_id: str,
        spread_type: str,
        cards: list[CardPosition],
        interpretation: str,
        interpretation_style: str | None = None,
        question: str | None = None,
        extended_question: bool = False,
    ) -> PaidOperationResult[Reading]:
        spread = pricing.normalize_spread(spread_type)
        style = pricing.normalize_style(interpretation_style)
        if not cards:
            raise BadRequestError("At least one card is required")
        if question and len(question) > MAX_QUESTION_LENGTH:
            raise BadRequestError(f"Question too long (max {MAX_QUESTION_LENGTH} characters)")
        cost = pricing.reading_cost(spread, style, extended_question)

        async def persist(transaction_id: str) -> Reading:
            return await self._store.create(
                Reading(
                    account_id=account_id,
                    spread_type=spread,
                    interpretation_style=style,
                    question=question,
                    cards=cards,
                    interpretation=interpretation,
                    credit_cost=cost.total_cost,
                    transaction_id=transaction_id,
                )
            )

        result = await self._orchestrator.run(
            account_id,
            cost.total_cost,
            TransactionKind.READING,
            f"{spread.replace('_', ' ').title()} reading",
            persist,
            operation="create_reading",
        )
        log.info(
            "reading_created",
            account_id=account_id,
            reading_id=result.value.reading_id,
            spread_type=spread,
            credit_cost=cost.total_cost,
        )
        return result

    async def add_follow_up(
        self,
        account_id: str,
        reading_id: str,
        question: str,
        answer: str,
    ) -> PaidOperationResult[FollowUp]:
        question = (question or "").strip()
        if not question:
            raise BadRequestError("Question is required")
        if len(question) > MAX_FOLLOW_UP_LENGTH:
            raise BadRequestError(f"Question too long (max {MAX_FOLLOW_UP_LENGTH} characters)")
        if not answer:
            raise BadRequestError("Answer is required")
        reading = await self._store.get_for_account(reading_id, account_id)
        if reading is None:
            raise NotFoundError("Reading not found", code="READING_NOT_FOUND")
        cost = pricing.cost_of("FOLLOW_UP")

        async def persist(transaction_id: str) -> FollowUp:
            return await self._store.add_follow_up(
                reading_id,
                FollowUp(question=question, answer=answer, credit_cost=cost, transaction_id=transaction_id),
            )

        result = await self._orchestrator.run(
            account_id,
            cost,
            TransactionKind.QUESTION,
            "Follow-up question",
            persist,
            operation="add_follow_up",
        )
        log.info("follow_up_added", account_id=account_id, reading_id=reading_id, follow_up_id=result.value.follow_up_id)
        return result
