"""ARQ job definitions."""

import uuid
from typing import Any, Awaitable

from arq.connections import RedisSettings

from creditledger.core.config import get_settings
from creditledger.core.logging import configure_logging, get_logger
from creditledger.services.components import Components, build_components

log = get_logger(__name__)


async def _run_with_dlq(
    ctx: dict[str, Any],
    job_name: str,
    kwargs: dict[str, Any],
    coro: Awaitable[Any],
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        if get_settings().store_backend == "mongo":
            from creditledger.models.failed_job import FailedJob
            await FailedJob(job_name=job_name, job_id=fid, kwargs=kwargs, reason=str(e)[:2000]).insert()
        raise


async def retry_pending_refunds(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: retry compensating refunds that failed inline."""
    components: Components = ctx["components"]

    async def _run() -> dict[str, int]:
        summary = await components.refunds.retry_due()
        log.info("job_done", job="retry_pending_refunds", **summary)
        return summary

    return await _run_with_dlq(ctx, "retry_pending_refunds", {}, _run())


async def purge_expired_idempotency_keys(ctx: dict[str, Any]) -> int:
    """Cron job: drop idempotency records past their TTL (Mongo's TTL index does this lazily too)."""
    components: Components = ctx["components"]
    return await _run_with_dlq(ctx, "purge_expired_idempotency_keys", {}, components.guard.purge_expired())


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(debug=settings.debug)
    ctx["components"] = await build_components(settings)


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
