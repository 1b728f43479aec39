"""Cron: roll back reservations left pending past the timeout."""

from datetime import timedelta

from app.core.config import get_settings
from app.core.logging import get_logger
from app.services import reservations as reservations_service

log = get_logger(__name__)


async def run_rollback_stale_reservations() -> list[str]:
    """Sweep in batches until no stale reservation is left. Expects Beanie to be initialised.

    Also finishes terminal reservations whose wallet move failed after the status change.
    """
    settings = get_settings()
    older_than = timedelta(minutes=settings.reservation_timeout_minutes)
    batch = settings.stale_sweep_batch_size
    swept: list[str] = []
    while True:
        rolled_back = await reservations_service.rollback_stale_reservations(older_than, batch)
        swept.extend(rolled_back)
        if len(rolled_back) < batch:
            break
    repaired = await reservations_service.settle_unsettled_reservations(older_than, batch)
    if swept or repaired:
        log.info(
            "stale_sweep_done",
            rolled_back=len(swept),
            repaired=len(repaired),
            timeout_minutes=settings.reservation_timeout_minutes,
        )
    return swept
