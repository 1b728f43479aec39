from datetime import datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field


class SystemConfig(Document):
    """Operator-owned switches: ai_enabled, maintenance_mode, daily_limit_per_user."""
    key: Indexed(str, unique=True)
    value: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "system_config"
