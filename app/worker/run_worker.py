"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import get_redis_settings, rollback_stale_reservations, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [rollback_stale_reservations]
    cron_jobs = [
        cron(rollback_stale_reservations, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
