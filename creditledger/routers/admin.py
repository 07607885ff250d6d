from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditledger.core.pagination import Page, page_of, paginate
from creditledger.deps import Principal, get_components, guarded_response, require_admin, required_idempotency_key
from creditledger.models.domain import Account, AccountAudit, PendingRefund, Transaction, TransactionKind
from creditledger.services.components import Components
from creditledger.services.idempotency import fingerprint

router = APIRouter()


class AdjustCreditsRequest(BaseModel):
    amount: int
    reason: str = Field(min_length=1, max_length=500)


@router.get("/accounts/{account_id}", response_model=Account)
async def admin_get_account(
    account_id: str,
    admin: Principal = Depends(require_admin),
    components: Components = Depends(get_components),
):
    return await components.ledger.get_account(account_id)


@router.get("/accounts/{account_id}/transactions", response_model=Page[Transaction])
async def admin_account_transactions(
    account_id: str,
    admin: Principal = Depends(require_admin),
    components: Components = Depends(get_components),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    kind: TransactionKind | None = None,
):
    limit, offset = paginate(limit, offset)
    items, total = await components.ledger.history(account_id, limit=limit, offset=offset, kind=kind)
    return page_of(items, total, limit, offset)


@router.get("/accounts/{account_id}/verify")
async def admin_verify_account(
    account_id: str,
    admin: Principal = Depends(require_admin),
    components: Components = Depends(get_components),
):
    """Audit: balance must equal the sum of completed transactions."""
    audit: AccountAudit = await components.ledger.verify_account(account_id)
    return {**audit.model_dump(), "consistent": audit.consistent}


@router.post("/accounts/{account_id}/credits")
async def admin_adjust_credits(
    account_id: str,
    body: AdjustCreditsRequest,
    admin: Principal = Depends(require_admin),
    components: Components = Depends(get_components),
    idempotency_key: str = Depends(required_idempotency_key),
):
    """Admin: positive amount grants credits, negative removes them."""
    async def run() -> dict[str, Any]:
        result = await components.ledger.adjust(account_id, body.amount, f"{body.reason} (by {admin.account_id})")
        return {"success": True, "new_balance": result.new_balance, "transaction_id": result.transaction_id}

    result = await components.guard.run(
        idempotency_key,
        f"admin.credits:{account_id}",
        run,
        account_id=admin.account_id,
        request_hash=fingerprint(body.model_dump()),
    )
    return guarded_response(result)


@router.get("/refunds/pending", response_model=list[PendingRefund])
async def admin_pending_refunds(
    admin: Principal = Depends(require_admin),
    components: Components = Depends(get_components),
    limit: int = Query(100, ge=1, le=500),
):
    """Refunds owed to users whose compensation failed (open and needing manual work)."""
    return await components.refunds.list_open(limit)


@router.post("/refunds/retry")
async def admin_retry_refunds(
    admin: Principal = Depends(require_admin),
    components: Components = Depends(get_components),
):
    return await components.refunds.retry_due()
