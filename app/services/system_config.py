"""Kill switches and global limits read once per request as an immutable snapshot."""

from dataclasses import dataclass
from datetime import datetime

from beanie.operators import In

from app.core.config import get_settings
from app.models.system_config import SystemConfig

AI_ENABLED_KEY = "ai_enabled"
MAINTENANCE_MODE_KEY = "maintenance_mode"
DAILY_LIMIT_KEY = "daily_limit_per_user"


@dataclass(frozen=True)
class ConfigSnapshot:
    ai_enabled: bool = True
    maintenance_mode: bool = False
    maintenance_message: str = ""
    daily_limit_per_user: int = 50

    def is_available(self) -> bool:
        return self.ai_enabled and not self.maintenance_mode

    def unavailable_message(self) -> str:
        if self.maintenance_mode:
            return self.maintenance_message or "Service is under maintenance. Please try again later"
        return "AI service is temporarily unavailable"


async def load_config_snapshot() -> ConfigSnapshot:
    """Merge system_config documents over settings defaults."""
    settings = get_settings()
    docs = await SystemConfig.find(
        In(SystemConfig.key, [AI_ENABLED_KEY, MAINTENANCE_MODE_KEY, DAILY_LIMIT_KEY])
    ).to_list()
    values = {d.key: d.value for d in docs}

    ai = values.get(AI_ENABLED_KEY, {})
    maintenance = values.get(MAINTENANCE_MODE_KEY, {})
    limit = values.get(DAILY_LIMIT_KEY, {})
    daily_limit = limit.get("limit") or settings.daily_limit_per_user
    return ConfigSnapshot(
        ai_enabled=bool(ai.get("enabled", settings.ai_enabled)),
        maintenance_mode=bool(maintenance.get("enabled", settings.maintenance_mode)),
        maintenance_message=str(maintenance.get("message") or settings.maintenance_message),
        daily_limit_per_user=int(daily_limit),
    )


async def set_config_value(key: str, value: dict) -> SystemConfig:
    """Upsert one switch (operator tooling and tests)."""
    doc = await SystemConfig.find_one(SystemConfig.key == key)
    if doc:
        doc.value = value
        doc.updated_at = datetime.utcnow()
        await doc.save()
        return doc
    doc = SystemConfig(key=key, value=value)
    await doc.insert()
    return doc
