from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:8081", "http://localhost:19006"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import orjson
            out = orjson.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="buildsight", alias="MONGODB_DB_NAME")

    # Redis (background worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # RevenueCat webhook
    revenuecat_webhook_secret: str = Field(default="", alias="REVENUECAT_WEBHOOK_SECRET")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:8081,http://localhost:19006",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Kill switches (fallbacks when system_config has no document)
    ai_enabled: bool = Field(default=True, alias="AI_ENABLED")
    maintenance_mode: bool = Field(default=False, alias="MAINTENANCE_MODE")
    maintenance_message: str = Field(default="", alias="MAINTENANCE_MESSAGE")

    # Credits
    daily_limit_per_user: int = Field(default=50, alias="DAILY_LIMIT_PER_USER")
    initial_credits: int = Field(default=0, alias="INITIAL_CREDITS")

    # Stale reservation sweep
    reservation_timeout_minutes: int = Field(default=15, alias="RESERVATION_TIMEOUT_MINUTES")
    stale_sweep_batch_size: int = Field(default=100, alias="STALE_SWEEP_BATCH_SIZE")


@lru_cache
def get_settings() -> Settings:
    return Settings()
