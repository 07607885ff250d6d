"""Run ARQ worker. Usage: python -m creditledger.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from creditledger.worker.tasks import (
    get_redis_settings,
    purge_expired_idempotency_keys,
    retry_pending_refunds,
    shutdown,
    startup,
)


class WorkerSettings:
    functions = [retry_pending_refunds, purge_expired_idempotency_keys]
    cron_jobs = [
        cron(retry_pending_refunds, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
        cron(purge_expired_idempotency_keys, minute=17, second=0),  # hourly
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
