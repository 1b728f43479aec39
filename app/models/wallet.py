from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class Wallet(Document):
    """Credit wallet per user; mutated only through conditional $inc updates."""
    user_id: Indexed(PydanticObjectId, unique=True)
    credits_balance: int = Field(default=0, ge=0)
    credits_reserved: int = Field(default=0, ge=0)
    lifetime_credits: int = Field(default=0, ge=0)
    # request_ids whose credit currently sits in credits_reserved
    held_requests: list[str] = Field(default_factory=list)
    # one-shot grants already credited (payment:<tx>, trial:<user>)
    applied_keys: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_wallets"
