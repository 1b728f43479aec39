"""ARQ job definitions."""

import uuid
from typing import Any, Awaitable

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro: Awaitable[Any],
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def rollback_stale_reservations(ctx: dict[str, Any]) -> int:
    """Cron job: refund credits held by reservations abandoned mid-call."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from app.worker.cron import run_rollback_stale_reservations
    rolled_back = await _run_with_dlq(
        "rollback_stale_reservations", job_id, [], {}, run_rollback_stale_reservations()
    )
    return len(rolled_back)


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    log.info("worker_shutdown")


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
