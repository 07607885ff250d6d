"""Payment gateway adapters. The ledger only consumes confirmed amount + order id."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from creditledger.core.config import Settings
from creditledger.core.exceptions import BadRequestError
from creditledger.core.security import verify_razorpay_checkout, verify_razorpay_webhook


class PaymentGateway(ABC):
    name: str

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a provider order; returns at least id, amount, currency."""
        ...

    @abstractmethod
    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> bool:
        ...

    def public_config(self) -> dict[str, Any]:
        return {}


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, settings: Settings):
        self._key_id = settings.razorpay_key_id
        self._key_secret = settings.razorpay_key_secret
        self._webhook_secret = settings.razorpay_webhook_secret

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        import razorpay
        if not self._key_id or not self._key_secret:
            raise BadRequestError("Payments not configured")
        client = razorpay.Client(auth=(self._key_id, self._key_secret))
        payload = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes or {}}
        # razorpay's client is blocking
        return await asyncio.to_thread(client.order.create, payload)

    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self._key_secret:
            return False
        return verify_razorpay_checkout(order_id, payment_id, signature, self._key_secret)

    def verify_webhook(self, payload: bytes, signature: str) -> bool:
        if not self._webhook_secret:
            raise BadRequestError("Webhook secret not configured")
        return verify_razorpay_webhook(payload, signature, self._webhook_secret)

    def public_config(self) -> dict[str, Any]:
        return {"key_id": self._key_id}
