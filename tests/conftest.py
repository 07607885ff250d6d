import os
from typing import Generator

import pytest
from fastapi.testclient import TestClient

# In-memory ledger; no Mongo or Redis needed
os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test-key-secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["IDEMPOTENCY_WAIT_SECONDS"] = "2.0"
os.environ["IDEMPOTENCY_POLL_INTERVAL_SECONDS"] = "0.01"

from creditledger.core.config import Settings, get_settings  # noqa: E402
from creditledger.models.domain import TransactionKind, new_id  # noqa: E402
from creditledger.services.components import Components, wire_components  # noqa: E402
from creditledger.services.ledger import CreditLedger  # noqa: E402
from creditledger.storage.base import Stores  # noqa: E402
from creditledger.storage.memory import build_memory_stores  # noqa: E402
from support import FakeRazorpayGateway  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def stores() -> Stores:
    return build_memory_stores()


@pytest.fixture
def gateway(settings) -> FakeRazorpayGateway:
    return FakeRazorpayGateway(settings)


@pytest.fixture
def components(settings, stores, gateway) -> Components:
    return wire_components(settings, stores, gateway)


@pytest.fixture
def ledger(components) -> CreditLedger:
    return components.ledger


@pytest.fixture
def make_account(ledger):
    """Open an account (with its signup bonus) and move it to the requested balance."""

    async def _make(balance: int = 5, account_id: str | None = None) -> str:
        account_id = account_id or f"acct-{new_id()[:8]}"
        account = await ledger.open_account(account_id)
        diff = balance - account.balance
        if diff > 0:
            await ledger.add(account_id, diff, TransactionKind.ACHIEVEMENT, "test top-up")
        elif diff < 0:
            await ledger.deduct(account_id, -diff, TransactionKind.READING, "test drain")
        return account_id

    return _make


@pytest.fixture
def client(settings, components) -> Generator[TestClient, None, None]:
    from creditledger.main import app
    with TestClient(app) as c:
        app.state.components = components
        yield c

