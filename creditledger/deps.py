"""Shared FastAPI dependencies."""

from dataclasses import dataclass

from fastapi import Header, Request
from fastapi.responses import ORJSONResponse

from creditledger.core.config import get_settings
from creditledger.core.exceptions import ForbiddenError, LedgerUnavailableError, UnauthorizedError
from creditledger.core.logging import bind_account_id
from creditledger.core.security import load_session_cookie, require_idempotency_key, verify_internal_token
from creditledger.services.components import Components
from creditledger.services.idempotency import GuardedResult

SESSION_COOKIE_NAME = "credit_ledger_session"


@dataclass
class Principal:
    account_id: str
    role: str = "user"


def get_components(request: Request) -> Components:
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise LedgerUnavailableError("Service is starting up")
    return components


async def get_current_account(request: Request) -> Principal:
    """Dependency: account id handed off by the identity provider in the session cookie."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid session")
    bind_account_id(account_id)
    return Principal(account_id=account_id, role=payload.get("role", "user"))


async def require_admin(request: Request) -> Principal:
    """Dependency: require current account to have role admin."""
    principal = await get_current_account(request)
    if principal.role != "admin":
        raise ForbiddenError("Admin only")
    return principal


async def require_internal(x_internal_token: str | None = Header(None, alias="X-Internal-Token")) -> None:
    """Dependency: service-to-service calls carry the shared internal token."""
    if not verify_internal_token(x_internal_token, get_settings().internal_api_token):
        raise UnauthorizedError("Invalid internal token")


async def required_idempotency_key(idempotency_key: str | None = Header(None, alias="Idempotency-Key")) -> str:
    """Dependency: paid client actions must be retry-safe."""
    return require_idempotency_key(idempotency_key)


def guarded_response(result: GuardedResult) -> ORJSONResponse:
    """Stored body for replays, flagged so clients can tell a replay from a fresh run."""
    response = ORJSONResponse(status_code=result.status_code, content=result.body)
    if result.replayed:
        response.headers["Idempotency-Replayed"] = "true"
    return response
