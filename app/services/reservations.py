"""
Reservation protocol for one AI call attempt: reserve -> finalize | rollback.

reserve records a pending reservation, then moves one credit from balance to
reserved; finalize drops it from reserved (spent); rollback returns it to
balance. Every wallet move is keyed by request_id on the wallet itself, so
replaying a step that failed halfway finishes it without applying it twice.
The reservation row decides the outcome; wallet_held and wallet_settled
record which wallet moves have been confirmed. Terminal states never change,
and replaying the same terminal transition is a no-op. A reservation
abandoned mid-call keeps its credit parked in credits_reserved until the
stale sweep rolls it back.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import In, Set

from app.core.config import get_settings
from app.core.exceptions import (
    AccountSuspendedError,
    AlreadyCompletedError,
    AlreadyRolledBackError,
    ConflictError,
    DailyLimitReachedError,
    ForbiddenError,
    InsufficientCreditsError,
    NotFoundError,
    ServiceUnavailableError,
)
from app.core.logging import get_logger
from app.core.security import normalize_request_id
from app.models.ledger_transaction import LedgerTransaction, TransactionType
from app.models.reservation import Reservation, ReservationStatus
from app.models.user import User
from app.models.wallet import Wallet
from app.services import idempotency, quota, wallets
from app.services.system_config import ConfigSnapshot

log = get_logger(__name__)

CREDITS_PER_CALL = 1
USAGE_DESCRIPTION = "AI estimate generation"
STALE_REASON = "reservation_timeout"
MAX_ERROR_MESSAGE = 500
TERMINAL_STATUSES = [ReservationStatus.COMPLETED.value, ReservationStatus.ROLLED_BACK.value]


@dataclass
class ReserveResult:
    request_id: str
    credits_balance: int
    credits_reserved: int
    duplicate: bool = False


def usage_key(request_id: str) -> str:
    return f"usage:{request_id}"


def _result(request_id: str, wallet: Wallet | None, duplicate: bool = False) -> ReserveResult:
    return ReserveResult(
        request_id=request_id,
        credits_balance=wallet.credits_balance if wallet else 0,
        credits_reserved=wallet.credits_reserved if wallet else 0,
        duplicate=duplicate,
    )


async def _take_hold(reservation: Reservation) -> Wallet:
    """Debit the wallet for a pending reservation, once per request_id."""
    request_id = reservation.request_id
    try:
        change = await wallets.apply_once(
            reservation.user_id,
            request_id,
            wallets.HOLD,
            balance_delta=-reservation.credits,
            reserved_delta=reservation.credits,
        )
    except InsufficientCreditsError:
        # Nothing was debited; drop the attempt so it does not count against the quota.
        await Reservation.find_one(
            Reservation.request_id == request_id,
            Reservation.status == ReservationStatus.PENDING.value,
            Reservation.wallet_held == False,  # noqa: E712
        ).delete()
        raise

    marked = await Reservation.find_one(
        Reservation.request_id == request_id,
        Reservation.status == ReservationStatus.PENDING.value,
    ).update(Set({Reservation.wallet_held: True}), response_type=UpdateResponse.NEW_DOCUMENT)
    if marked is None:
        # Finalized or rolled back while the hold was being taken: settle again to pick it up.
        current = await get_reservation(request_id)
        return await _settle(current)
    return change.wallet


async def _resume(existing: Reservation, user: User) -> ReserveResult:
    """A reused request id resumes the existing flow instead of failing."""
    if existing.user_id != user.id:
        raise ConflictError("requestId already in use", details={"request_id": existing.request_id})
    log.info("reserve_duplicate", user_id=str(user.id), request_id=existing.request_id, status=existing.status.value)
    if existing.status == ReservationStatus.PENDING and not existing.wallet_held:
        # An earlier attempt recorded the reservation but never confirmed the debit.
        wallet = await _take_hold(existing)
    elif existing.is_terminal and not existing.wallet_settled:
        wallet = await _settle(existing)
    else:
        wallet = await wallets.get_wallet(user.id)
    return _result(existing.request_id, wallet, duplicate=True)


async def reserve(
    user: User,
    config: ConfigSnapshot,
    request_id: str | None = None,
    project_type: str | None = None,
    country_code: str | None = None,
) -> ReserveResult:
    """
    Hold one credit for an upcoming AI call.

    Raises ServiceUnavailableError, AccountSuspendedError, DailyLimitReachedError
    or InsufficientCreditsError; none of them leaves a debit behind. On a storage
    error the caller retries with the same request id to resume.
    """
    if not config.is_available():
        raise ServiceUnavailableError(config.unavailable_message())
    if not user.is_active:
        raise AccountSuspendedError()

    request_id = normalize_request_id(request_id)
    existing = await Reservation.find_one(Reservation.request_id == request_id)
    if existing:
        return await _resume(existing, user)

    daily_limit = quota.resolve_daily_limit(user, config)
    if not await quota.check_and_count(user.id, daily_limit):
        usage = await quota.count_daily_usage(user.id)
        log.info("reserve_daily_limit", user_id=str(user.id), daily_usage=usage, daily_limit=daily_limit)
        raise DailyLimitReachedError(usage, daily_limit)

    wallet = await wallets.get_wallet(user.id)
    if wallet is None or wallet.credits_balance < CREDITS_PER_CALL:
        raise InsufficientCreditsError(details={"credits_balance": wallet.credits_balance if wallet else 0})

    guard = await idempotency.begin_if_absent(
        Reservation(
            request_id=request_id,
            user_id=user.id,
            credits=CREDITS_PER_CALL,
            project_type=project_type,
            country_code=country_code,
        ),
        Reservation.request_id == request_id,
    )
    if not guard.accepted:
        return await _resume(guard.record, user)

    wallet = await _take_hold(guard.record)
    log.info(
        "credit_reserved",
        user_id=str(user.id),
        request_id=request_id,
        credits_balance=wallet.credits_balance,
        credits_reserved=wallet.credits_reserved,
    )
    return _result(request_id, wallet)


async def get_reservation(request_id: str, user_id: PydanticObjectId | None = None) -> Reservation:
    reservation = await Reservation.find_one(Reservation.request_id == request_id)
    if reservation is None:
        raise NotFoundError("Reservation not found")
    if user_id is not None and reservation.user_id != user_id:
        raise ForbiddenError("Reservation does not belong to this device")
    return reservation


async def _transition(
    request_id: str,
    target: ReservationStatus,
    fields: dict[Any, Any],
) -> Reservation | None:
    """pending -> target as one conditional update; None if no longer pending."""
    values = {
        Reservation.status: target.value,
        Reservation.completed_at: datetime.utcnow(),
        **fields,
    }
    return await Reservation.find_one(
        Reservation.request_id == request_id,
        Reservation.status == ReservationStatus.PENDING.value,
    ).update(Set(values), response_type=UpdateResponse.NEW_DOCUMENT)


async def _record_usage(reservation: Reservation, balance_after: int) -> None:
    key = usage_key(reservation.request_id)
    await idempotency.begin_if_absent(
        LedgerTransaction(
            user_id=reservation.user_id,
            amount=-reservation.credits,
            transaction_type=TransactionType.USAGE,
            reference_id=reservation.request_id,
            idempotency_key=key,
            description=USAGE_DESCRIPTION,
            balance_after=balance_after,
        ),
        LedgerTransaction.user_id == reservation.user_id,
        LedgerTransaction.idempotency_key == key,
    )


async def _settle(reservation: Reservation) -> Wallet:
    """
    Apply a terminal reservation's outcome to the wallet.

    Safe to repeat: the hold is released at most once, and the usage row is
    insert-once. wallet_settled is only set after both have happened.
    """
    credits = reservation.credits
    refund = credits if reservation.status == ReservationStatus.ROLLED_BACK else 0
    change = await wallets.apply_once(
        reservation.user_id,
        reservation.request_id,
        wallets.RELEASE,
        balance_delta=refund,
        reserved_delta=-credits,
    )
    if reservation.status == ReservationStatus.COMPLETED and (change.applied or reservation.wallet_held):
        await _record_usage(reservation, change.wallet.credits_balance)
    await reservation.set({Reservation.wallet_settled: True})
    if not change.applied:
        log.info("settle_replay", request_id=reservation.request_id, status=reservation.status.value)
    return change.wallet


def _check_terminal(reservation: Reservation, wanted: ReservationStatus) -> Reservation:
    """Same terminal state: idempotent replay. Opposite terminal state: conflict."""
    if reservation.status == wanted:
        return reservation
    if reservation.status == ReservationStatus.ROLLED_BACK:
        raise AlreadyRolledBackError(reservation.request_id)
    raise AlreadyCompletedError(reservation.request_id)


async def _replay(reservation: Reservation, wanted: ReservationStatus) -> Reservation:
    """Finish a terminal reservation whose wallet move never landed, then compare outcomes."""
    if not reservation.wallet_settled:
        log.warning("settle_resumed", request_id=reservation.request_id, status=reservation.status.value)
        await _settle(reservation)
    return _check_terminal(reservation, wanted)


async def finalize(
    request_id: str,
    user_id: PydanticObjectId | None = None,
    latency_ms: int | None = None,
    response_tokens: int | None = None,
) -> Reservation:
    """Spend the held credit: reserved -= 1, balance untouched, one usage row."""
    reservation = await get_reservation(request_id, user_id)
    if reservation.is_terminal:
        log.info("finalize_replay", request_id=request_id, status=reservation.status.value)
        return await _replay(reservation, ReservationStatus.COMPLETED)

    updated = await _transition(
        request_id,
        ReservationStatus.COMPLETED,
        {Reservation.latency_ms: latency_ms, Reservation.response_tokens: response_tokens},
    )
    if updated is None:
        # A concurrent finalize or rollback got there first.
        return await _replay(await get_reservation(request_id), ReservationStatus.COMPLETED)

    wallet = await _settle(updated)
    log.info(
        "credit_finalized",
        user_id=str(updated.user_id),
        request_id=request_id,
        latency_ms=latency_ms,
        credits_reserved=wallet.credits_reserved,
    )
    return updated


async def rollback(
    request_id: str,
    reason: str | None = None,
    user_id: PydanticObjectId | None = None,
) -> Reservation:
    """Refund the held credit: reserved -= 1, balance += 1."""
    reservation = await get_reservation(request_id, user_id)
    if reservation.is_terminal:
        log.info("rollback_replay", request_id=request_id, status=reservation.status.value)
        return await _replay(reservation, ReservationStatus.ROLLED_BACK)

    message = (reason or "AI generation failed")[:MAX_ERROR_MESSAGE]
    updated = await _transition(
        request_id,
        ReservationStatus.ROLLED_BACK,
        {Reservation.error_message: message},
    )
    if updated is None:
        return await _replay(await get_reservation(request_id), ReservationStatus.ROLLED_BACK)

    wallet = await _settle(updated)
    log.info(
        "credit_rolled_back",
        user_id=str(updated.user_id),
        request_id=request_id,
        reason=message,
        credits_balance=wallet.credits_balance,
    )
    return updated


async def complete(
    request_id: str,
    user_id: PydanticObjectId | None,
    success: bool,
    latency_ms: int | None = None,
    reason: str | None = None,
    response_tokens: int | None = None,
) -> Reservation:
    """Client-reported outcome of the AI call."""
    if success:
        return await finalize(request_id, user_id, latency_ms=latency_ms, response_tokens=response_tokens)
    return await rollback(request_id, reason, user_id=user_id)


async def rollback_stale_reservations(
    older_than: timedelta | None = None,
    limit: int | None = None,
) -> list[str]:
    """Roll back reservations left pending past the timeout; return their request ids."""
    settings = get_settings()
    if older_than is None:
        older_than = timedelta(minutes=settings.reservation_timeout_minutes)
    cutoff = datetime.utcnow() - older_than
    stale = (
        await Reservation.find(
            Reservation.status == ReservationStatus.PENDING.value,
            Reservation.created_at < cutoff,
        )
        .sort(+Reservation.created_at)
        .limit(limit or settings.stale_sweep_batch_size)
        .to_list()
    )
    rolled_back: list[str] = []
    for r in stale:
        try:
            await rollback(r.request_id, STALE_REASON)
        except AlreadyCompletedError:
            # Finalized between the scan and the rollback.
            continue
        except Exception:
            log.exception("stale_rollback_failed", request_id=r.request_id, user_id=str(r.user_id))
            continue
        rolled_back.append(r.request_id)
    if stale:
        log.info("stale_reservations_swept", found=len(stale), rolled_back=len(rolled_back))
    return rolled_back


async def settle_unsettled_reservations(
    older_than: timedelta | None = None,
    limit: int | None = None,
) -> list[str]:
    """Finish wallet moves for terminal reservations whose settle step failed."""
    settings = get_settings()
    if older_than is None:
        older_than = timedelta(minutes=settings.reservation_timeout_minutes)
    cutoff = datetime.utcnow() - older_than
    unsettled = (
        await Reservation.find(
            Reservation.wallet_settled == False,  # noqa: E712
            In(Reservation.status, TERMINAL_STATUSES),
            Reservation.completed_at < cutoff,
        )
        .sort(+Reservation.completed_at)
        .limit(limit or settings.stale_sweep_batch_size)
        .to_list()
    )
    settled: list[str] = []
    for r in unsettled:
        try:
            await _settle(r)
        except Exception:
            log.exception("settle_repair_failed", request_id=r.request_id, user_id=str(r.user_id))
            continue
        settled.append(r.request_id)
    if unsettled:
        log.warning("unsettled_reservations_repaired", found=len(unsettled), settled=len(settled))
    return settled
