import hashlib
import hmac
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from creditledger.core.config import get_settings
from creditledger.core.exceptions import BadRequestError

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600
IDEMPOTENCY_KEY_MAX_LENGTH = 256


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="credit-ledger-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    """Issued by the identity hand-off; carries account_id and role."""
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def verify_internal_token(presented: str | None, expected: str) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_razorpay_webhook(payload: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(_hmac_hex(secret, payload), signature or "")


def verify_razorpay_checkout(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """Checkout handler signature: HMAC-SHA256 of "order_id|payment_id" with the key secret."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.compare_digest(_hmac_hex(secret, message), signature or "")


def validate_idempotency_key(key: str | None) -> str | None:
    if key is None:
        return None
    key = key.strip()
    if not key:
        return None
    if len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise BadRequestError(
            f"Idempotency key too long (max {IDEMPOTENCY_KEY_MAX_LENGTH} characters)",
            details={"code": "INVALID_IDEMPOTENCY_KEY"},
        )
    return key


def require_idempotency_key(key: str | None) -> str:
    key = validate_idempotency_key(key)
    if not key:
        raise BadRequestError("Idempotency-Key header is required for this request")
    return key
