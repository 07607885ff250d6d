from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from creditledger.deps import Principal, get_components, get_current_account, guarded_response, required_idempotency_key
from creditledger.services.components import Components
from creditledger.services.idempotency import fingerprint
from creditledger.services.pricing import CREDIT_PACKAGES

router = APIRouter()


class CreateOrderRequest(BaseModel):
    package_id: str


class CaptureRequest(BaseModel):
    order_id: str
    payment_id: str
    signature: str


@router.get("/packages")
async def list_packages():
    return {"packages": [p.model_dump() for p in CREDIT_PACKAGES]}


@router.post("/orders")
async def create_order(
    body: CreateOrderRequest,
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
    idempotency_key: str = Depends(required_idempotency_key),
):
    """Create a provider order for a credit package; price comes from the server-side table."""
    async def run() -> dict[str, Any]:
        return await components.payments.create_order(principal.account_id, body.package_id)

    result = await components.guard.run(
        idempotency_key,
        "payments.orders",
        run,
        account_id=principal.account_id,
        request_hash=fingerprint(body.model_dump()),
    )
    return guarded_response(result)


@router.post("/capture")
async def capture_payment(
    body: CaptureRequest,
    principal: Principal = Depends(get_current_account),
    components: Components = Depends(get_components),
):
    """Checkout callback. The order id is the idempotency key; a second call reports already_captured."""
    outcome = await components.payments.confirm_checkout(
        principal.account_id, body.order_id, body.payment_id, body.signature
    )
    return {
        "status": outcome.status.value,
        "credits": outcome.credits,
        "new_balance": outcome.new_balance,
        "transaction_id": outcome.transaction_id,
    }


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    components: Components = Depends(get_components),
    x_razorpay_signature: str = Header(..., alias="X-Razorpay-Signature"),
):
    """Razorpay webhook: payment.captured -> credit once per order; storage faults answer non-2xx."""
    body = await request.body()
    return await components.payments.handle_webhook(body, x_razorpay_signature)
