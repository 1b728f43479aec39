from datetime import datetime, timedelta

import pytest

from app.models.failed_job import FailedJob
from app.models.reservation import Reservation, ReservationStatus
from app.services import reservations, wallets
from app.worker import tasks


async def test_cron_job_rolls_back_stale_reservations(make_user, config):
    user = await make_user(balance=3)
    for request_id in ("worker-stale-1", "worker-stale-2", "worker-fresh-1"):
        await reservations.reserve(user, config, request_id=request_id)
    old = datetime.utcnow() - timedelta(hours=1)
    for request_id in ("worker-stale-1", "worker-stale-2"):
        reservation = await Reservation.find_one(Reservation.request_id == request_id)
        await reservation.set({Reservation.created_at: old})

    assert await tasks.rollback_stale_reservations({"job_id": "cron:sweep"}) == 2

    wallet = await wallets.get_wallet(user.id)
    assert (wallet.credits_balance, wallet.credits_reserved) == (2, 1)
    fresh = await Reservation.find_one(Reservation.request_id == "worker-fresh-1")
    assert fresh.status == ReservationStatus.PENDING
    stale = await Reservation.find_one(Reservation.request_id == "worker-stale-1")
    assert stale.error_message == reservations.STALE_REASON


async def test_cron_job_failure_goes_to_dead_letter(db, monkeypatch):
    import app.worker.cron as cron

    async def _boom():
        raise RuntimeError("sweep failed")

    monkeypatch.setattr(cron, "run_rollback_stale_reservations", _boom)
    with pytest.raises(RuntimeError):
        await tasks.rollback_stale_reservations({"job_id": "cron:sweep"})

    failed = await FailedJob.find_one(FailedJob.job_id == "cron:sweep")
    assert failed.job_name == "rollback_stale_reservations"
    assert failed.reason == "sweep failed"
