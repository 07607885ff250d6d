"""Test doubles and request helpers shared by the test modules."""

import hashlib
import hmac
from typing import Any

import orjson
from fastapi.testclient import TestClient

from creditledger.core.config import Settings
from creditledger.core.security import create_session_cookie
from creditledger.models.domain import new_id
from creditledger.services.gateways import RazorpayGateway
from creditledger.storage.base import TransientStoreError
from creditledger.storage.memory import MemoryUnitOfWork

INTERNAL_HEADERS = {"X-Internal-Token": "test-internal-token"}


class FakeRazorpayGateway(RazorpayGateway):
    """Real signature checks, no network for order creation."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.orders: list[dict[str, Any]] = []

    async def create_order(self, amount_minor, currency, receipt, notes=None):
        order = {"id": f"order_{new_id()[:14]}", "amount": amount_minor, "currency": currency, "receipt": receipt}
        self.orders.append(order)
        return order


class BrokenUnitOfWork(MemoryUnitOfWork):
    async def __aenter__(self):
        raise RuntimeError("connection reset")


class FlakyUnitOfWork(MemoryUnitOfWork):
    """Write conflict on the first `failures` entries, then behaves normally."""

    def __init__(self, state, counter: list[int], failures: int):
        super().__init__(state)
        self._counter = counter
        self._failures = failures

    async def __aenter__(self):
        self._counter[0] += 1
        if self._counter[0] <= self._failures:
            raise TransientStoreError("write conflict")
        return await super().__aenter__()


def checkout_signature(order_id: str, payment_id: str, secret: str = "test-key-secret") -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def webhook_body(event: str, order_id: str, amount: int, currency: str = "EUR") -> bytes:
    return orjson.dumps(
        {
            "event": event,
            "payload": {
                "payment": {
                    "entity": {"id": f"pay_{new_id()[:14]}", "order_id": order_id, "amount": amount, "currency": currency}
                }
            },
        }
    )


def webhook_signature(body: bytes, secret: str = "test-webhook-secret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def login(client: TestClient, account_id: str, role: str = "user") -> None:
    from creditledger.deps import SESSION_COOKIE_NAME
    client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"account_id": account_id, "role": role}))
