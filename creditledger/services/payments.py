"""Credit purchases: provider orders, checkout confirmation and webhooks.

The provider order id is the natural idempotency key of a purchase: it is
stored as the pending transaction's external reference, so any number of
checkout callbacks and webhook deliveries for the same order credit once.
"""

from typing import Any

import orjson

from creditledger.core.config import Settings
from creditledger.core.exceptions import BadRequestError, NotFoundError, PaymentCaptureFailedError
from creditledger.core.logging import get_logger
from creditledger.models.domain import CaptureOutcome, CaptureStatus, new_id
from creditledger.services.gateways import PaymentGateway
from creditledger.services.ledger import CreditLedger
from creditledger.services.pricing import get_package

log = get_logger(__name__)


class PaymentService:
    def __init__(self, ledger: CreditLedger, gateway: PaymentGateway, settings: Settings):
        self._ledger = ledger
        self._gateway = gateway
        self._currency = settings.payment_currency.upper()

    async def create_order(self, account_id: str, package_id: str) -> dict[str, Any]:
        """Create the provider order and its PENDING purchase transaction."""
        package = get_package(package_id)
        await self._ledger.get_account(account_id)
        order = await self._gateway.create_order(
            package.price_minor,
            self._currency,
            receipt=f"cl_{new_id()[:24]}",
            notes={"account_id": account_id, "package_id": package.id, "credits": str(package.credits)},
        )
        tx = await self._ledger.open_purchase(
            account_id,
            package.credits,
            order["id"],
            description=f"Credit purchase: {package.name}",
            payment_amount=int(order.get("amount", package.price_minor)),
            currency=order.get("currency", self._currency),
            provider=self._gateway.name,
        )
        log.info(
            "payment_order_created",
            account_id=account_id,
            package_id=package.id,
            order_id=order["id"],
            transaction_id=tx.transaction_id,
        )
        return {
            "order_id": order["id"],
            "amount": tx.payment_amount,
            "currency": tx.currency,
            "credits": package.credits,
            "package_id": package.id,
            "transaction_id": tx.transaction_id,
            **self._gateway.public_config(),
        }

    async def confirm_checkout(
        self,
        account_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> CaptureOutcome:
        """Client-side capture callback. Safe to call any number of times."""
        if not self._gateway.verify_checkout_signature(order_id, payment_id, signature):
            log.warning("checkout_signature_invalid", account_id=account_id, order_id=order_id)
            raise BadRequestError("Invalid payment signature")
        outcome = await self._ledger.settle_purchase(order_id, account_id=account_id)
        if outcome.status == CaptureStatus.NOT_FOUND:
            raise NotFoundError("Payment order not found", code="PAYMENT_ORDER_NOT_FOUND")
        if not outcome.credited:
            raise PaymentCaptureFailedError(
                "Payment could not be captured",
                details={"order_id": order_id, "status": outcome.status.value},
            )
        return outcome

    async def handle_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify HMAC and settle payment.captured / payment.failed events."""
        if not self._gateway.verify_webhook(payload, signature):
            log.warning("webhook_signature_invalid")
            raise BadRequestError("Invalid webhook signature")
        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            raise BadRequestError("Invalid webhook payload") from e
        payment = data
        for field in ("payload", "payment", "entity"):
            if not isinstance(payment, dict):
                break
            payment = payment.get(field, {})
        if not isinstance(data, dict) or not isinstance(payment, dict):
            log.warning("webhook_payload_malformed")
            raise BadRequestError("Invalid webhook payload")
        event = data.get("event")
        order_id = payment.get("order_id")
        if event not in ("payment.captured", "payment.failed") or not order_id:
            log.info("webhook_ignored", webhook_event=event)
            return {"status": "ignored"}

        if event == "payment.captured":
            outcome = await self._ledger.settle_purchase(
                order_id,
                paid_amount=payment.get("amount"),
                currency=payment.get("currency"),
            )
        else:
            outcome = await self._ledger.fail_purchase(order_id)
        if outcome.status == CaptureStatus.NOT_FOUND:
            # Unknown orders are acknowledged so the provider stops retrying.
            log.warning("webhook_order_unknown", webhook_event=event, order_id=order_id)
        log.info("webhook_processed", webhook_event=event, order_id=order_id, status=outcome.status.value)
        return {"status": outcome.status.value}
