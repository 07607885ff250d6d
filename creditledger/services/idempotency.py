"""Idempotency guard for mutating ledger entry points.

A (key, scope) pair is claimed with a unique insert before the operation
runs, so two racing requests can never both execute it. The loser polls the
winner's record and replays the stored result once it is written.

Records live for a bounded TTL. After expiry the key is forgotten and a
request reusing it runs again as if it were new: storage stays bounded, at
the cost of replay protection older than the TTL.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import orjson

from creditledger.core.exceptions import (
    AppError,
    IdempotencyInProgressError,
    IdempotencyKeyReusedError,
    LedgerUnavailableError,
)
from creditledger.core.logging import get_logger
from creditledger.core.security import require_idempotency_key
from creditledger.models.domain import IdempotencyRecord, IdempotencyState
from creditledger.storage.base import IdempotencyStore

log = get_logger(__name__)


def fingerprint(payload: Any) -> str:
    """Stable hash of a request body, used to detect a key reused for another request."""
    return hashlib.sha256(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)).hexdigest()


@dataclass
class GuardedResult:
    body: dict[str, Any]
    replayed: bool = False
    status_code: int = 200


class IdempotencyGuard:
    def __init__(
        self,
        store: IdempotencyStore,
        ttl_seconds: int = 86400,
        wait_seconds: float = 5.0,
        poll_interval: float = 0.05,
    ):
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._wait = wait_seconds
        self._poll = poll_interval

    async def run(
        self,
        key: str,
        scope: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
        *,
        account_id: str | None = None,
        request_hash: str | None = None,
        status_code: int = 200,
    ) -> GuardedResult:
        """Run operation at most once per (key, scope) within the TTL.

        The operation must return a JSON-serialisable dict; that dict is what
        later duplicates receive. Failures release the key so the caller can
        retry with it, except replayable AppErrors, which are stored and
        re-raised for every duplicate.

        A cancelled operation releases the key too; the retry runs it afresh.
        """
        key = require_idempotency_key(key)
        replay = await self._claim(key, scope, account_id, request_hash)
        if replay is not None:
            return replay

        try:
            body = await operation()
        except asyncio.CancelledError:
            await asyncio.shield(self._release(key, scope))
            raise
        except AppError as e:
            if e.replayable:
                await self._complete(key, scope, e.to_snapshot(), e.status_code, failed=True)
            else:
                await self._release(key, scope)
            raise
        except Exception:
            await self._release(key, scope)
            raise

        await self._complete(key, scope, body, status_code)
        return GuardedResult(body=body, status_code=status_code)

    async def _claim(
        self,
        key: str,
        scope: str,
        account_id: str | None,
        request_hash: str | None,
    ) -> GuardedResult | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait
        while True:
            now = datetime.utcnow()
            record = IdempotencyRecord(
                key=key,
                scope=scope,
                account_id=account_id,
                request_hash=request_hash,
                expires_at=now + self._ttl,
            )
            try:
                if await self._store.claim(record):
                    return None
                existing = await self._store.get(key, scope)
                if existing is not None and existing.is_expired(now):
                    await self._store.delete_if_expired(key, scope, now)
                    log.info("idempotency_key_expired", key=key, scope=scope)
                    continue
            except Exception as e:
                log.error("idempotency_store_failed", key=key, scope=scope, error=str(e))
                raise LedgerUnavailableError("Idempotency store unavailable", details={"scope": scope}) from e
            if existing is None:
                # released between our insert and read; try again
                continue

            if existing.account_id != account_id or (
                request_hash is not None and existing.request_hash is not None and existing.request_hash != request_hash
            ):
                raise IdempotencyKeyReusedError(key, scope)
            if existing.state == IdempotencyState.COMPLETED:
                log.info("idempotent_replay", key=key, scope=scope)
                return GuardedResult(body=existing.result or {}, replayed=True, status_code=existing.status_code or 200)
            if existing.state == IdempotencyState.FAILED:
                log.info("idempotent_failure_replay", key=key, scope=scope)
                raise AppError.from_snapshot(existing.result or {})

            if loop.time() >= deadline:
                log.warning("idempotency_wait_timeout", key=key, scope=scope)
                raise IdempotencyInProgressError(key, scope)
            await asyncio.sleep(self._poll)

    async def _complete(
        self,
        key: str,
        scope: str,
        result: dict[str, Any],
        status_code: int,
        failed: bool = False,
    ) -> None:
        # The operation already committed; a lost record only weakens replay.
        try:
            await self._store.complete(key, scope, result, status_code, failed=failed)
        except Exception as e:
            log.error("idempotency_complete_failed", key=key, scope=scope, error=str(e))

    async def _release(self, key: str, scope: str) -> None:
        try:
            await self._store.release(key, scope)
        except Exception as e:
            log.error("idempotency_release_failed", key=key, scope=scope, error=str(e))

    async def purge_expired(self) -> int:
        removed = await self._store.purge_expired(datetime.utcnow())
        log.info("idempotency_keys_purged", removed=removed)
        return removed
