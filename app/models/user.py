from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Device-identified app user and plan state. Owned outside the ledger."""
    device_id: Indexed(str, unique=True)
    email: str | None = None
    plan_type: str = "free"  # free | single | pack10 | pro_monthly
    is_active: bool = True
    daily_limit: int | None = None  # overrides system default when set
    pending_trial_credits: int = 0  # welcome grant fixed at signup, cleared once credited
    revenuecat_customer_id: Indexed(str) | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
