"""Reservation protocol: reserve -> finalize | rollback."""

import asyncio
import random
from datetime import datetime, timedelta

import pytest
from pymongo.errors import AutoReconnect

from app.core.exceptions import (
    AccountSuspendedError,
    AlreadyCompletedError,
    AlreadyRolledBackError,
    ConflictError,
    ForbiddenError,
    InsufficientCreditsError,
    NotFoundError,
    ServiceUnavailableError,
)
from app.models.ledger_transaction import LedgerTransaction, TransactionType
from app.models.reservation import Reservation, ReservationStatus
from app.services import reservations, wallets
from app.services.system_config import ConfigSnapshot


async def _state(user_id):
    wallet = await wallets.get_wallet(user_id)
    return wallet.credits_balance, wallet.credits_reserved


async def test_reserve_finalize_reserve_rollback_scenario(make_user, config):
    user = await make_user(balance=10)

    r1 = await reservations.reserve(user, config, request_id="request-0001")
    assert (r1.credits_balance, r1.credits_reserved) == (9, 1)
    assert await _state(user.id) == (9, 1)

    await reservations.finalize("request-0001", user.id, latency_ms=1200)
    assert await _state(user.id) == (9, 0)

    await reservations.reserve(user, config, request_id="request-0002")
    assert await _state(user.id) == (8, 1)

    rolled = await reservations.rollback("request-0002", "ai_failed", user_id=user.id)
    assert rolled.status == ReservationStatus.ROLLED_BACK
    assert rolled.error_message == "ai_failed"
    assert await _state(user.id) == (9, 0)


async def test_reserve_generates_request_id(make_user, config):
    user = await make_user(balance=1)
    result = await reservations.reserve(user, config, project_type="kitchen", country_code="DE")
    reservation = await Reservation.find_one(Reservation.request_id == result.request_id)
    assert reservation.status == ReservationStatus.PENDING
    assert reservation.project_type == "kitchen"
    assert reservation.country_code == "DE"


async def test_reserve_with_zero_balance_fails(make_user, config):
    user = await make_user(balance=0)
    with pytest.raises(InsufficientCreditsError):
        await reservations.reserve(user, config)
    assert await Reservation.find(Reservation.user_id == user.id).count() == 0
    assert await _state(user.id) == (0, 0)


async def test_reserve_blocked_for_suspended_account(make_user, config):
    user = await make_user(balance=5, is_active=False)
    with pytest.raises(AccountSuspendedError):
        await reservations.reserve(user, config)
    assert await _state(user.id) == (5, 0)


async def test_reserve_blocked_when_ai_disabled_or_in_maintenance(make_user):
    user = await make_user(balance=5)
    with pytest.raises(ServiceUnavailableError):
        await reservations.reserve(user, ConfigSnapshot(ai_enabled=False))
    with pytest.raises(ServiceUnavailableError) as exc:
        await reservations.reserve(user, ConfigSnapshot(maintenance_mode=True, maintenance_message="Back at 6"))
    assert exc.value.message == "Back at 6"
    assert await _state(user.id) == (5, 0)


async def test_duplicate_request_id_returns_existing_reservation(make_user, config):
    user = await make_user(balance=5)
    first = await reservations.reserve(user, config, request_id="dup-request-1")
    second = await reservations.reserve(user, config, request_id="dup-request-1")
    assert not first.duplicate
    assert second.duplicate
    assert second.request_id == first.request_id
    assert await _state(user.id) == (4, 1)
    assert await Reservation.find(Reservation.user_id == user.id).count() == 1


async def test_request_id_of_another_user_is_a_conflict(make_user, config):
    alice = await make_user("device-alice", balance=5)
    bob = await make_user("device-bob", balance=5)
    await reservations.reserve(alice, config, request_id="shared-request")
    with pytest.raises(ConflictError):
        await reservations.reserve(bob, config, request_id="shared-request")
    assert await _state(bob.id) == (5, 0)


async def test_finalize_twice_is_noop(make_user, config):
    user = await make_user(balance=3)
    await reservations.reserve(user, config, request_id="request-final")
    first = await reservations.finalize("request-final", user.id)
    second = await reservations.finalize("request-final", user.id)
    assert first.status == second.status == ReservationStatus.COMPLETED
    assert await _state(user.id) == (2, 0)
    usage = await LedgerTransaction.find(
        LedgerTransaction.user_id == user.id,
        LedgerTransaction.transaction_type == TransactionType.USAGE.value,
    ).to_list()
    assert len(usage) == 1
    assert usage[0].amount == -1
    assert usage[0].reference_id == "request-final"


async def test_rollback_twice_is_noop(make_user, config):
    user = await make_user(balance=3)
    await reservations.reserve(user, config, request_id="request-undo")
    await reservations.rollback("request-undo", "timeout")
    await reservations.rollback("request-undo", "timeout")
    assert await _state(user.id) == (3, 0)


async def test_rollback_after_finalize_conflicts(make_user, config):
    user = await make_user(balance=3)
    await reservations.reserve(user, config, request_id="request-done")
    await reservations.finalize("request-done")
    with pytest.raises(AlreadyCompletedError):
        await reservations.rollback("request-done", "late failure")
    assert await _state(user.id) == (2, 0)


async def test_finalize_after_rollback_conflicts(make_user, config):
    user = await make_user(balance=3)
    await reservations.reserve(user, config, request_id="request-back")
    await reservations.rollback("request-back", "ai_failed")
    with pytest.raises(AlreadyRolledBackError):
        await reservations.finalize("request-back")
    assert await _state(user.id) == (3, 0)


async def test_finalize_unknown_or_foreign_reservation(make_user, config):
    alice = await make_user("device-alice", balance=3)
    bob = await make_user("device-bob", balance=3)
    await reservations.reserve(alice, config, request_id="alice-request")
    with pytest.raises(NotFoundError):
        await reservations.finalize("missing-request")
    with pytest.raises(ForbiddenError):
        await reservations.finalize("alice-request", bob.id)
    with pytest.raises(ForbiddenError):
        await reservations.rollback("alice-request", "nope", user_id=bob.id)


async def test_complete_routes_failure_to_rollback(make_user, config):
    user = await make_user(balance=2)
    await reservations.reserve(user, config, request_id="request-fail")
    reservation = await reservations.complete("request-fail", user.id, success=False, reason="gemini 500")
    assert reservation.status == ReservationStatus.ROLLED_BACK
    assert await _state(user.id) == (2, 0)


async def test_concurrent_reservations_serialize_on_balance(make_user, config):
    user = await make_user(balance=3)
    results = await asyncio.gather(
        *[reservations.reserve(user, config, request_id=f"burst-request-{i}") for i in range(5)],
        return_exceptions=True,
    )
    ok = [r for r in results if isinstance(r, reservations.ReserveResult)]
    assert len(ok) == 3
    assert sum(isinstance(r, InsufficientCreditsError) for r in results) == 2
    assert await _state(user.id) == (0, 3)


async def test_credits_are_conserved_across_random_sequences(make_user, config):
    rng = random.Random(7)
    purchased = 6
    user = await make_user(balance=purchased)
    pending: list[str] = []
    finalized = 0
    for i in range(40):
        action = rng.choice(["reserve", "finalize", "rollback"])
        if action == "reserve":
            try:
                result = await reservations.reserve(user, config, request_id=f"seq-request-{i}")
                pending.append(result.request_id)
            except InsufficientCreditsError:
                pass
        elif pending:
            request_id = pending.pop(rng.randrange(len(pending)))
            if action == "finalize":
                await reservations.finalize(request_id)
                finalized += 1
            else:
                await reservations.rollback(request_id, "random")
        balance, reserved = await _state(user.id)
        assert balance >= 0 and reserved >= 0
        assert balance + reserved == purchased - finalized
        assert reserved == len(pending)


async def test_stale_reservations_are_rolled_back(make_user, config):
    user = await make_user(balance=3)
    await reservations.reserve(user, config, request_id="stale-request")
    await reservations.reserve(user, config, request_id="fresh-request")
    stale = await Reservation.find_one(Reservation.request_id == "stale-request")
    await stale.set({Reservation.created_at: datetime.utcnow() - timedelta(hours=1)})

    swept = await reservations.rollback_stale_reservations(timedelta(minutes=15))

    assert swept == ["stale-request"]
    stale = await Reservation.find_one(Reservation.request_id == "stale-request")
    assert stale.status == ReservationStatus.ROLLED_BACK
    assert stale.error_message == reservations.STALE_REASON
    fresh = await Reservation.find_one(Reservation.request_id == "fresh-request")
    assert fresh.status == ReservationStatus.PENDING
    assert await _state(user.id) == (2, 1)


def _fail_once(monkeypatch, mode):
    """Make the next wallet move of `mode` hit a dropped connection."""
    real_apply_once = wallets.apply_once
    state = {"failed": False}

    async def flaky(user_id, key, wallet_mode, **deltas):
        if wallet_mode == mode and not state["failed"]:
            state["failed"] = True
            raise AutoReconnect("connection reset by peer")
        return await real_apply_once(user_id, key, wallet_mode, **deltas)

    monkeypatch.setattr(wallets, "apply_once", flaky)


async def test_finalize_retry_after_storage_error_releases_hold(make_user, config, monkeypatch):
    user = await make_user(balance=5)
    await reservations.reserve(user, config, request_id="retry-final-1")
    _fail_once(monkeypatch, wallets.RELEASE)

    with pytest.raises(AutoReconnect):
        await reservations.finalize("retry-final-1", user.id)
    row = await Reservation.find_one(Reservation.request_id == "retry-final-1")
    assert row.status == ReservationStatus.COMPLETED
    assert not row.wallet_settled
    assert await _state(user.id) == (4, 1)

    again = await reservations.finalize("retry-final-1", user.id)
    assert again.status == ReservationStatus.COMPLETED
    assert await _state(user.id) == (4, 0)
    assert await LedgerTransaction.find(
        LedgerTransaction.user_id == user.id,
        LedgerTransaction.transaction_type == TransactionType.USAGE.value,
    ).count() == 1
    row = await Reservation.find_one(Reservation.request_id == "retry-final-1")
    assert row.wallet_settled


async def test_rollback_retry_after_storage_error_refunds(make_user, config, monkeypatch):
    user = await make_user(balance=5)
    await reservations.reserve(user, config, request_id="retry-undo-1")
    _fail_once(monkeypatch, wallets.RELEASE)

    with pytest.raises(AutoReconnect):
        await reservations.rollback("retry-undo-1", "ai_failed", user_id=user.id)
    assert await _state(user.id) == (4, 1)

    # A late finalize still settles the refund before reporting the conflict.
    with pytest.raises(AlreadyRolledBackError):
        await reservations.finalize("retry-undo-1", user.id)
    assert await _state(user.id) == (5, 0)
    await reservations.rollback("retry-undo-1", "ai_failed", user_id=user.id)
    assert await _state(user.id) == (5, 0)


async def test_sweep_settles_terminal_reservation_left_unsettled(make_user, config, monkeypatch):
    user = await make_user(balance=5)
    await reservations.reserve(user, config, request_id="unsettled-1")
    _fail_once(monkeypatch, wallets.RELEASE)
    with pytest.raises(AutoReconnect):
        await reservations.rollback("unsettled-1", "ai_failed")
    row = await Reservation.find_one(Reservation.request_id == "unsettled-1")
    await row.set({Reservation.completed_at: datetime.utcnow() - timedelta(hours=1)})

    assert await reservations.rollback_stale_reservations(timedelta(minutes=15)) == []
    repaired = await reservations.settle_unsettled_reservations(timedelta(minutes=15))

    assert repaired == ["unsettled-1"]
    assert await _state(user.id) == (5, 0)
    assert await reservations.settle_unsettled_reservations(timedelta(minutes=15)) == []


async def test_reserve_retry_after_failed_debit_resumes(make_user, config, monkeypatch):
    user = await make_user(balance=5)
    _fail_once(monkeypatch, wallets.HOLD)

    with pytest.raises(AutoReconnect):
        await reservations.reserve(user, config, request_id="retry-hold-1")
    row = await Reservation.find_one(Reservation.request_id == "retry-hold-1")
    assert row.status == ReservationStatus.PENDING
    assert not row.wallet_held
    assert await _state(user.id) == (5, 0)

    result = await reservations.reserve(user, config, request_id="retry-hold-1")
    assert result.duplicate
    assert (result.credits_balance, result.credits_reserved) == (4, 1)
    await reservations.finalize("retry-hold-1", user.id)
    assert await _state(user.id) == (4, 0)


async def test_abandoned_failed_debit_is_swept_without_refund(make_user, config, monkeypatch):
    user = await make_user(balance=5)
    _fail_once(monkeypatch, wallets.HOLD)
    with pytest.raises(AutoReconnect):
        await reservations.reserve(user, config, request_id="never-held-1")
    row = await Reservation.find_one(Reservation.request_id == "never-held-1")
    await row.set({Reservation.created_at: datetime.utcnow() - timedelta(hours=1)})

    assert await reservations.rollback_stale_reservations(timedelta(minutes=15)) == ["never-held-1"]
    assert await _state(user.id) == (5, 0)


async def test_stale_sweep_continues_past_failing_row(make_user, config, monkeypatch):
    user = await make_user(balance=5)
    old = datetime.utcnow() - timedelta(hours=1)
    for request_id in ("stuck-request-1", "stuck-request-2"):
        await reservations.reserve(user, config, request_id=request_id)
        row = await Reservation.find_one(Reservation.request_id == request_id)
        await row.set({Reservation.created_at: old})

    real_rollback = reservations.rollback

    async def rollback_or_fail(request_id, reason=None, user_id=None):
        if request_id == "stuck-request-1":
            raise AutoReconnect("primary stepped down")
        return await real_rollback(request_id, reason, user_id=user_id)

    monkeypatch.setattr(reservations, "rollback", rollback_or_fail)
    swept = await reservations.rollback_stale_reservations(timedelta(minutes=15))

    assert swept == ["stuck-request-2"]
    assert await _state(user.id) == (4, 1)
