import pytest

from creditledger.core.exceptions import (
    BadRequestError,
    NotFoundError,
    PaymentCaptureFailedError,
)
from creditledger.models.domain import CaptureStatus, TransactionKind, TransactionStatus
from creditledger.services.ledger import CreditLedger
from creditledger.services.payments import PaymentService
from creditledger.storage.memory import MemoryState
from support import BrokenUnitOfWork, checkout_signature, webhook_body, webhook_signature


async def _order(components, account_id, package_id="starter"):
    return await components.payments.create_order(account_id, package_id)


async def test_create_order_records_pending_purchase(components, ledger, make_account, gateway):
    account_id = await make_account(balance=3)

    order = await _order(components, account_id)

    assert order["credits"] == 10
    assert order["amount"] == 500
    assert order["currency"] == "EUR"
    assert order["key_id"] == "rzp_test_key"
    assert gateway.orders[0]["id"] == order["order_id"]
    [purchase] = (await ledger.history(account_id, kind=TransactionKind.PURCHASE))[0]
    assert purchase.status == TransactionStatus.PENDING
    assert purchase.external_reference == order["order_id"]
    assert (await ledger.get_account(account_id)).balance == 3
    assert (await ledger.verify_account(account_id)).consistent


async def test_create_order_rejects_unknown_package(components, make_account):
    account_id = await make_account()
    with pytest.raises(BadRequestError):
        await _order(components, account_id, "mega")


async def test_webhook_delivered_twice_credits_once(components, ledger, make_account):
    account_id = await make_account(balance=3)
    order = await _order(components, account_id, "basic")
    body = webhook_body("payment.captured", order["order_id"], 1000)

    first = await components.payments.handle_webhook(body, webhook_signature(body))
    second = await components.payments.handle_webhook(body, webhook_signature(body))

    assert first == {"status": "captured"}
    assert second == {"status": "already_captured"}
    assert (await ledger.get_account(account_id)).balance == 28
    assert (await ledger.verify_account(account_id)).consistent


async def test_checkout_then_webhook(components, ledger, make_account):
    account_id = await make_account(balance=3)
    order = await _order(components, account_id)
    signature = checkout_signature(order["order_id"], "pay_123")

    captured = await components.payments.confirm_checkout(account_id, order["order_id"], "pay_123", signature)
    again = await components.payments.confirm_checkout(account_id, order["order_id"], "pay_123", signature)
    body = webhook_body("payment.captured", order["order_id"], 500)
    hook = await components.payments.handle_webhook(body, webhook_signature(body))

    assert captured.status == CaptureStatus.CAPTURED
    assert captured.new_balance == 13
    assert again.status == CaptureStatus.ALREADY_CAPTURED
    assert again.transaction_id == captured.transaction_id
    assert hook["status"] == "already_captured"
    assert (await ledger.get_account(account_id)).balance == 13


async def test_checkout_signature_must_match(components, make_account):
    account_id = await make_account()
    order = await _order(components, account_id)
    with pytest.raises(BadRequestError):
        await components.payments.confirm_checkout(account_id, order["order_id"], "pay_1", "forged")


async def test_checkout_for_someone_elses_order(components, make_account):
    owner = await make_account()
    other = await make_account()
    order = await _order(components, owner)
    signature = checkout_signature(order["order_id"], "pay_1")

    with pytest.raises(NotFoundError):
        await components.payments.confirm_checkout(other, order["order_id"], "pay_1", signature)


async def test_amount_mismatch_credits_nothing(components, ledger, make_account):
    account_id = await make_account(balance=3)
    order = await _order(components, account_id)
    body = webhook_body("payment.captured", order["order_id"], 1)

    result = await components.payments.handle_webhook(body, webhook_signature(body))

    assert result == {"status": "amount_mismatch"}
    assert (await ledger.get_account(account_id)).balance == 3
    [purchase] = (await ledger.history(account_id, kind=TransactionKind.PURCHASE))[0]
    assert purchase.status == TransactionStatus.FAILED


async def test_currency_mismatch_credits_nothing(components, ledger, make_account):
    account_id = await make_account(balance=3)
    order = await _order(components, account_id)
    body = webhook_body("payment.captured", order["order_id"], 500, currency="INR")

    result = await components.payments.handle_webhook(body, webhook_signature(body))

    assert result == {"status": "amount_mismatch"}
    assert (await ledger.get_account(account_id)).balance == 3


async def test_failed_payment_is_never_credited(components, ledger, make_account):
    account_id = await make_account(balance=3)
    order = await _order(components, account_id)
    failed = webhook_body("payment.failed", order["order_id"], 500)
    captured = webhook_body("payment.captured", order["order_id"], 500)

    assert (await components.payments.handle_webhook(failed, webhook_signature(failed)))["status"] == "failed"
    assert (await components.payments.handle_webhook(captured, webhook_signature(captured)))["status"] == "failed"
    assert (await ledger.get_account(account_id)).balance == 3


async def test_unknown_order_and_other_events(components):
    unknown = webhook_body("payment.captured", "order_missing", 500)
    refund = webhook_body("refund.processed", "order_missing", 500)

    assert await components.payments.handle_webhook(unknown, webhook_signature(unknown)) == {"status": "not_found"}
    assert await components.payments.handle_webhook(refund, webhook_signature(refund)) == {"status": "ignored"}


@pytest.mark.parametrize(
    "body",
    [
        b"[]",
        b'"captured"',
        b'{"event": "payment.captured", "payload": null}',
        b'{"event": "payment.captured", "payload": {"payment": []}}',
    ],
)
async def test_webhook_with_wrong_shape_is_rejected(components, body):
    with pytest.raises(BadRequestError):
        await components.payments.handle_webhook(body, webhook_signature(body))


async def test_webhook_signature_and_payload_checked(components):
    body = webhook_body("payment.captured", "order_x", 500)
    with pytest.raises(BadRequestError):
        await components.payments.handle_webhook(body, "bad")
    garbage = b"not json"
    with pytest.raises(BadRequestError):
        await components.payments.handle_webhook(garbage, webhook_signature(garbage))


async def test_storage_fault_makes_provider_retry(settings, gateway):
    state = MemoryState()
    payments = PaymentService(CreditLedger(lambda: BrokenUnitOfWork(state)), gateway, settings)
    body = webhook_body("payment.captured", "order_x", 500)

    with pytest.raises(PaymentCaptureFailedError):
        await payments.handle_webhook(body, webhook_signature(body))
