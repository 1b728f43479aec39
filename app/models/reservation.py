from datetime import datetime
from enum import Enum

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class ReservationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class Reservation(Document):
    """One credit held for one AI call attempt, keyed by request_id."""
    request_id: Indexed(str, unique=True)
    user_id: PydanticObjectId
    status: ReservationStatus = ReservationStatus.PENDING
    credits: int = 1
    project_type: str | None = None
    country_code: str | None = None
    latency_ms: int | None = None
    response_tokens: int | None = None
    error_message: str | None = None
    wallet_held: bool = False  # credit moved from balance to reserved
    wallet_settled: bool = False  # terminal outcome applied to the wallet
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ReservationStatus.PENDING

    class Settings:
        name = "reservations"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", 1)],
            [("wallet_settled", 1), ("status", 1), ("completed_at", 1)],
        ]
