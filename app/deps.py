"""Shared FastAPI dependencies."""

from fastapi import Depends, Header

from app.core.exceptions import NotFoundError
from app.core.logging import bind_device_id
from app.core.security import require_device_id
from app.models.user import User
from app.services.system_config import ConfigSnapshot, load_config_snapshot
from app.services.users import get_user_by_device


async def get_device_id(x_device_id: str | None = Header(default=None, alias="X-Device-ID")) -> str:
    """Dependency: caller identity comes from the X-Device-ID header."""
    device_id = require_device_id(x_device_id)
    bind_device_id(device_id)
    return device_id


async def get_current_user(device_id: str = Depends(get_device_id)) -> User:
    """Dependency: load the user for the calling device (404 until init)."""
    user = await get_user_by_device(device_id)
    if not user:
        raise NotFoundError("User not found. Please initialize user first.")
    return user


async def get_config() -> ConfigSnapshot:
    """Dependency: kill switches read once per request; tests override this."""
    return await load_config_snapshot()
