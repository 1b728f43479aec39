"""Daily usage ceiling per user, counted over the current UTC day."""

from datetime import datetime

from beanie import PydanticObjectId
from beanie.operators import In

from app.models.reservation import Reservation, ReservationStatus
from app.models.user import User
from app.services.system_config import ConfigSnapshot

# Rolled-back attempts gave their credit back and do not count.
COUNTED_STATUSES = [ReservationStatus.PENDING.value, ReservationStatus.COMPLETED.value]


def utc_day_start(now: datetime | None = None) -> datetime:
    current = now or datetime.utcnow()
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


async def count_daily_usage(user_id: PydanticObjectId, now: datetime | None = None) -> int:
    return await Reservation.find(
        Reservation.user_id == user_id,
        In(Reservation.status, COUNTED_STATUSES),
        Reservation.created_at >= utc_day_start(now),
    ).count()


async def check_and_count(user_id: PydanticObjectId, daily_limit: int) -> bool:
    """True while today's count is below daily_limit. Not re-checked at finalize."""
    return await count_daily_usage(user_id) < daily_limit


def resolve_daily_limit(user: User, config: ConfigSnapshot) -> int:
    if user.daily_limit is not None:
        return user.daily_limit
    return config.daily_limit_per_user
