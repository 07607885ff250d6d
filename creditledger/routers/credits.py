from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from creditledger.core.exceptions import BadRequestError
from creditledger.core.pagination import Page, page_of, paginate
from creditledger.core.security import validate_idempotency_key
from creditledger.deps import Principal, get_components, get_current_account, guarded_response, require_internal
from creditledger.models.domain import LedgerResult, Transaction, TransactionKind
from creditledger.services import pricing
from creditledger.services.components import Components
from creditledger.services.idempotency import fingerprint

router = APIRouter()


class LedgerMutationRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    kind: TransactionKind
    description: str = Field(default="", max_length=500)


class RefundRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    description: str = Field(default="", max_length=500)
    original_transaction_id: str | None = None


def ledger_body(result: LedgerResult) -> dict[str, Any]:
    return {"success": True, "new_balance": result.new_balance, "transaction_id": result.transaction_id}


@router.get("/balance")
async def credits_balance(
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
):
    """Return current credit balance and lifetime counters."""
    account = await components.ledger.get_account(principal.account_id)
    return {
        "balance": account.balance,
        "lifetime_earned": account.lifetime_earned,
        "lifetime_spent": account.lifetime_spent,
    }


@router.get("/ledger", response_model=Page[Transaction])
async def credits_ledger(
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    kind: TransactionKind | None = None,
):
    """Return transactions for the current account (newest first)."""
    limit, offset = paginate(limit, offset)
    items, total = await components.ledger.history(principal.account_id, limit=limit, offset=offset, kind=kind)
    return page_of(items, total, limit, offset)


@router.get("/pricing")
async def credits_pricing():
    return pricing.price_table()


@router.get("/check")
async def credits_check(
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
    amount: int | None = Query(None, ge=0),
    operation: str | None = None,
):
    """Fail-fast balance check by raw amount or by priced operation (e.g. SPREAD:CELTIC_CROSS)."""
    if amount is None and not operation:
        raise BadRequestError("Either amount or operation is required")
    required = amount if amount is not None else components.ledger.cost_of(operation)
    check = await components.ledger.check_sufficient(principal.account_id, required)
    return check.model_dump()


@router.post("/daily-bonus")
async def credits_daily_bonus(
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
):
    """Claim the daily login bonus (once per UTC day)."""
    return await components.bonuses.claim_daily_bonus(principal.account_id)


async def _internal(
    components: Components,
    key: str | None,
    scope: str,
    body: BaseModel,
    account_id: str,
    operation: Callable[[], Awaitable[dict[str, Any]]],
) -> ORJSONResponse:
    # Internal callers may omit the key; client-initiated retries must send one.
    key = validate_idempotency_key(key)
    if key is None:
        return ORJSONResponse(await operation())
    result = await components.guard.run(
        key,
        scope,
        operation,
        account_id=account_id,
        request_hash=fingerprint(body.model_dump(mode="json")),
    )
    return guarded_response(result)


@router.post("/deduct", dependencies=[Depends(require_internal)])
async def credits_deduct(
    body: LedgerMutationRequest,
    components: Components = Depends(get_components),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    async def run() -> dict[str, Any]:
        result = await components.ledger.deduct(body.account_id, body.amount, body.kind, body.description)
        return ledger_body(result)

    return await _internal(components, idempotency_key, "credits.deduct", body, body.account_id, run)


@router.post("/add", dependencies=[Depends(require_internal)])
async def credits_add(
    body: LedgerMutationRequest,
    components: Components = Depends(get_components),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    async def run() -> dict[str, Any]:
        result = await components.ledger.add(body.account_id, body.amount, body.kind, body.description)
        return ledger_body(result)

    return await _internal(components, idempotency_key, "credits.add", body, body.account_id, run)


@router.post("/refund", dependencies=[Depends(require_internal)])
async def credits_refund(
    body: RefundRequest,
    components: Components = Depends(get_components),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    async def run() -> dict[str, Any]:
        result = await components.ledger.refund(
            body.account_id,
            body.amount,
            body.description,
            original_transaction_id=body.original_transaction_id,
        )
        return ledger_body(result)

    return await _internal(components, idempotency_key, "credits.refund", body, body.account_id, run)
