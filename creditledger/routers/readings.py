from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from creditledger.deps import Principal, get_components, get_current_account, guarded_response, required_idempotency_key
from creditledger.models.domain import CardPosition
from creditledger.services.components import Components
from creditledger.services.idempotency import fingerprint

router = APIRouter()


class CreateReadingRequest(BaseModel):
    spread_type: str
    interpretation_style: str | None = None
    question: str | None = None
    cards: list[CardPosition] = Field(default_factory=list)
    interpretation: str = Field(min_length=1)
    extended_question: bool = False


class FollowUpRequest(BaseModel):
    question: str
    answer: str = Field(min_length=1)


@router.post("")
async def create_reading(
    body: CreateReadingRequest,
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
    idempotency_key: str = Depends(required_idempotency_key),
):
    """Deduct-first: credits are charged before the reading is saved and refunded if saving fails."""
    async def run() -> dict[str, Any]:
        result = await components.readings.create_reading(
            principal.account_id,
            body.spread_type,
            body.cards,
            body.interpretation,
            interpretation_style=body.interpretation_style,
            question=body.question,
            extended_question=body.extended_question,
        )
        return {
            "reading": result.value.model_dump(mode="json"),
            "credit_cost": result.cost,
            "new_balance": result.new_balance,
            "transaction_id": result.transaction_id,
        }

    result = await components.guard.run(
        idempotency_key,
        "readings.create",
        run,
        account_id=principal.account_id,
        request_hash=fingerprint(body.model_dump(mode="json")),
        status_code=201,
    )
    return guarded_response(result)


@router.post("/{reading_id}/follow-up")
async def add_follow_up(
    reading_id: str,
    body: FollowUpRequest,
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
    idempotency_key: str = Depends(required_idempotency_key),
):
    async def run() -> dict[str, Any]:
        result = await components.readings.add_follow_up(principal.account_id, reading_id, body.question, body.answer)
        return {
            "follow_up": result.value.model_dump(mode="json"),
            "credit_cost": result.cost,
            "new_balance": result.new_balance,
            "transaction_id": result.transaction_id,
        }

    result = await components.guard.run(
        idempotency_key,
        f"readings.follow-up:{reading_id}",
        run,
        account_id=principal.account_id,
        request_hash=fingerprint(body.model_dump(mode="json")),
        status_code=201,
    )
    return guarded_response(result)
