"""Wallet store: per-user balances changed only by atomic conditional updates."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import AddToSet, Inc, Pull, Set
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import ConflictError, InsufficientCreditsError, NotFoundError
from app.core.logging import get_logger
from app.models.wallet import Wallet

log = get_logger(__name__)

HOLD = "hold"
RELEASE = "release"
GRANT = "grant"


@dataclass
class KeyedChange:
    wallet: Wallet
    applied: bool  # False when the key had already been applied


async def get_wallet(user_id: PydanticObjectId) -> Wallet | None:
    return await Wallet.find_one(Wallet.user_id == user_id)


async def ensure_wallet(user_id: PydanticObjectId) -> Wallet:
    """Return the user's wallet, creating it on first access.

    Concurrent creators race on the unique user_id index; the loser reads the winner's wallet.
    """
    wallet = await get_wallet(user_id)
    if wallet:
        return wallet
    wallet = Wallet(user_id=user_id)
    try:
        await wallet.insert()
    except DuplicateKeyError:
        existing = await get_wallet(user_id)
        if existing is None:
            raise
        return existing
    log.info("wallet_created", user_id=str(user_id))
    return wallet


async def _conditional_update(
    user_id: PydanticObjectId,
    balance_delta: int,
    reserved_delta: int,
    lifetime_delta: int,
    extra_filters: list[Any],
    extra_updates: list[Any],
) -> Wallet | None:
    """One find_one_and_update; None when any guard in the filter fails."""
    if lifetime_delta < 0:
        raise ValueError("lifetime_credits never decreases")

    filters = [Wallet.user_id == user_id, *extra_filters]
    if balance_delta < 0:
        filters.append(Wallet.credits_balance >= -balance_delta)
    if reserved_delta < 0:
        filters.append(Wallet.credits_reserved >= -reserved_delta)

    increments = {}
    if balance_delta:
        increments[Wallet.credits_balance] = balance_delta
    if reserved_delta:
        increments[Wallet.credits_reserved] = reserved_delta
    if lifetime_delta:
        increments[Wallet.lifetime_credits] = lifetime_delta

    updates = [Set({Wallet.updated_at: datetime.utcnow()}), *extra_updates]
    if increments:
        updates.append(Inc(increments))

    return await Wallet.find_one(*filters).update(
        *updates,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )


def _raise_guard_failure(user_id: PydanticObjectId, current: Wallet | None, balance_delta: int, reserved_delta: int):
    if current is None:
        if balance_delta < 0:
            raise InsufficientCreditsError(details={"credits_balance": 0})
        raise NotFoundError("Wallet not found")
    if balance_delta < 0 and current.credits_balance < -balance_delta:
        raise InsufficientCreditsError(details={"credits_balance": current.credits_balance})
    # Only the reserved guard can fail here: a release without a matching hold.
    log.error(
        "wallet_reserved_underflow",
        user_id=str(user_id),
        credits_reserved=current.credits_reserved,
        reserved_delta=reserved_delta,
    )
    raise ConflictError(
        "Reserved credits would become negative",
        details={"credits_reserved": current.credits_reserved},
    )


async def apply_delta(
    user_id: PydanticObjectId,
    balance_delta: int = 0,
    reserved_delta: int = 0,
    lifetime_delta: int = 0,
) -> Wallet:
    """
    Apply signed deltas in one conditional find_one_and_update.

    The filter only matches when the result stays non-negative, so concurrent
    writers for the same user serialize on the document and nothing is applied
    when a guard fails. Returns the wallet after the update.
    """
    wallet = await _conditional_update(user_id, balance_delta, reserved_delta, lifetime_delta, [], [])
    if wallet is not None:
        return wallet
    _raise_guard_failure(user_id, await get_wallet(user_id), balance_delta, reserved_delta)


async def apply_once(
    user_id: PydanticObjectId,
    key: str,
    mode: str,
    balance_delta: int = 0,
    reserved_delta: int = 0,
    lifetime_delta: int = 0,
) -> KeyedChange:
    """
    Apply deltas at most once per key, in the same update that records the key.

    HOLD adds `key` to held_requests, RELEASE removes it, GRANT adds it to
    applied_keys for good. A replay finds the key already in its final state
    and returns the current wallet with applied=False, so a caller that failed
    halfway can simply call again.
    """
    if mode == HOLD:
        key_filter, key_update = Wallet.held_requests != key, AddToSet({Wallet.held_requests: key})
    elif mode == RELEASE:
        key_filter, key_update = Wallet.held_requests == key, Pull({Wallet.held_requests: key})
    elif mode == GRANT:
        key_filter, key_update = Wallet.applied_keys != key, AddToSet({Wallet.applied_keys: key})
    else:
        raise ValueError(f"Unknown wallet key mode: {mode}")

    wallet = await _conditional_update(
        user_id, balance_delta, reserved_delta, lifetime_delta, [key_filter], [key_update]
    )
    if wallet is not None:
        return KeyedChange(wallet=wallet, applied=True)

    current = await get_wallet(user_id)
    if current is not None:
        done = {
            HOLD: key in current.held_requests,
            RELEASE: key not in current.held_requests,
            GRANT: key in current.applied_keys,
        }[mode]
        if done:
            log.info("wallet_key_replay", user_id=str(user_id), key=key, mode=mode)
            return KeyedChange(wallet=current, applied=False)
    _raise_guard_failure(user_id, current, balance_delta, reserved_delta)
