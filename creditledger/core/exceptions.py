from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    # Terminal failures are stored by the idempotency guard and replayed;
    # everything else releases the key so the caller may retry with it.
    replayable = False

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": self.details,
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> "AppError":
        return AppError(
            snapshot["message"],
            code=snapshot["code"],
            status_code=snapshot["status_code"],
            details=snapshot.get("details") or {},
        )


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND"):
        super().__init__(message, code=code, status_code=status.HTTP_404_NOT_FOUND)


class AccountNotFoundError(NotFoundError):
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", code="ACCOUNT_NOT_FOUND")
        self.details = {"account_id": account_id}


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientCreditsError(AppError):
    """User-facing: the account cannot pay for the operation."""

    def __init__(self, required: int, balance: int):
        super().__init__(
            f"Insufficient credits: have {balance}, need {required}",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "balance": balance},
        )
        self.required = required
        self.balance = balance


class LedgerUnavailableError(AppError):
    """Storage fault while touching the ledger; safe to retry with the same key."""

    def __init__(
        self,
        message: str = "Credit ledger unavailable",
        code: str = "LEDGER_UNAVAILABLE",
        status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


class CreditDeductionFailedError(LedgerUnavailableError):
    def __init__(self, message: str = "Failed to deduct credits", details: dict[str, Any] | None = None):
        super().__init__(message, code="CREDIT_DEDUCTION_FAILED", details=details)


class RefundFailedError(LedgerUnavailableError):
    """Money the ledger owes the user was not returned."""

    def __init__(self, message: str = "Failed to refund credits", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="REFUND_FAILED",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class CompensationFailedError(RefundFailedError):
    """Paid side effect failed and its compensating refund failed too.

    Replayed for the same idempotency key: running the operation again would
    charge a second time while the first charge is still owed back.
    """

    replayable = True


class PaidOperationFailedError(AppError):
    """The paid side effect failed after the debit; details say whether it was refunded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="OPERATION_FAILED", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class PaymentCaptureFailedError(AppError):
    def __init__(self, message: str = "Payment capture failed", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="PAYMENT_CAPTURE_FAILED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )


class IdempotencyInProgressError(AppError):
    def __init__(self, key: str, scope: str):
        super().__init__(
            "A request with this idempotency key is already in progress",
            code="DUPLICATE_REQUEST_IN_PROGRESS",
            status_code=status.HTTP_409_CONFLICT,
            details={"idempotency_key": key, "scope": scope, "retry": True},
        )


class IdempotencyKeyReusedError(AppError):
    def __init__(self, key: str, scope: str):
        super().__init__(
            "Idempotency key was already used for a different request",
            code="IDEMPOTENCY_KEY_REUSED",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"idempotency_key": key, "scope": scope},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from creditledger.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
