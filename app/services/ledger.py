"""Ledger history and the restore-purchases summary."""

from typing import Any

from beanie import PydanticObjectId
from beanie.operators import In

from app.core.pagination import Page, paginate
from app.models.ledger_transaction import LedgerTransaction, TransactionType
from app.models.reservation import Reservation, ReservationStatus
from app.services import idempotency, wallets

PAYMENT_TYPES = [TransactionType.PURCHASE.value, TransactionType.SUBSCRIPTION_RENEWAL.value]


def serialize_transaction(t: LedgerTransaction) -> dict[str, Any]:
    return {
        "id": str(t.id),
        "amount": t.amount,
        "transactionType": t.transaction_type.value,
        "referenceId": t.reference_id,
        "description": t.description,
        "balanceAfter": t.balance_after,
        "createdAt": t.created_at.isoformat(),
    }


async def recent_transactions(user_id: PydanticObjectId, limit: int = 10) -> list[LedgerTransaction]:
    return (
        await LedgerTransaction.find(LedgerTransaction.user_id == user_id)
        .sort(-LedgerTransaction.created_at)
        .limit(limit)
        .to_list()
    )


async def list_transactions(user_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> Page[dict[str, Any]]:
    """Ledger entries for one user, newest first."""
    limit, offset = paginate(limit, offset)
    query = LedgerTransaction.find(LedgerTransaction.user_id == user_id)
    total = await query.count()
    entries = await query.sort(-LedgerTransaction.created_at).skip(offset).limit(limit).to_list()
    return Page[dict[str, Any]](
        items=[serialize_transaction(e) for e in entries],
        limit=limit,
        offset=offset,
        total=total,
    )


async def restore_summary(user_id: PydanticObjectId) -> dict[str, Any]:
    """Everything the app needs to rebuild its credit state after a reinstall."""
    wallet = await wallets.get_wallet(user_id)
    payments = (
        await LedgerTransaction.find(
            LedgerTransaction.user_id == user_id,
            In(LedgerTransaction.transaction_type, PAYMENT_TYPES),
        )
        .sort(-LedgerTransaction.created_at)
        .to_list()
    )
    total_usage = await Reservation.find(
        Reservation.user_id == user_id,
        Reservation.status == ReservationStatus.COMPLETED.value,
    ).count()
    return {
        "userId": str(user_id),
        "creditsBalance": wallet.credits_balance if wallet else 0,
        "lifetimeCredits": wallet.lifetime_credits if wallet else 0,
        "totalPurchases": len(payments),
        "totalUsage": total_usage,
        "transactions": [serialize_transaction(t) for t in payments[:20]],
    }


async def record_credit(
    user_id: PydanticObjectId,
    amount: int,
    transaction_type: TransactionType,
    reference_id: str,
    idempotency_key: str,
    description: str,
    balance_after: int,
) -> LedgerTransaction:
    """
    Write the ledger row for a credit the wallet has already taken.

    Insert-once on (user_id, idempotency_key). A row left with no
    balance_after by an interrupted earlier write is filled in.
    """
    guard = await idempotency.begin_if_absent(
        LedgerTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            description=description,
            balance_after=balance_after,
        ),
        LedgerTransaction.user_id == user_id,
        LedgerTransaction.idempotency_key == idempotency_key,
    )
    record = guard.record
    if record.balance_after is None:
        await record.set({LedgerTransaction.balance_after: balance_after})
    return record
