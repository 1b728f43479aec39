from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    TRIAL = "trial"


class LedgerTransaction(Document):
    user_id: PydanticObjectId
    amount: int  # positive = credit, negative = debit
    transaction_type: TransactionType
    reference_id: str | None = None  # payment transaction id or reservation request_id
    idempotency_key: str  # unique per user: payment:<transaction_id>, usage:<request_id>
    description: str | None = None
    balance_after: int | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            IndexModel(
                [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                name="user_idempotency_key_unique",
            ),
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("reference_id", ASCENDING)]),
        ]
