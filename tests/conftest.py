import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from beanie import init_beanie
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("MONGODB_DB_NAME", "buildsight_test")
os.environ.setdefault("REVENUECAT_WEBHOOK_SECRET", "")


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test, with Beanie models and unique indexes."""
    from app.db.init import DOCUMENT_MODELS
    client = AsyncMongoMockClient()
    database = client["buildsight_test"]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    yield database


@pytest.fixture
def config():
    from app.services.system_config import ConfigSnapshot
    return ConfigSnapshot(daily_limit_per_user=50)


@pytest_asyncio.fixture
async def make_user(db):
    """Create a user with a wallet holding `balance` credits."""
    from app.models.user import User
    from app.models.wallet import Wallet

    async def _make(device_id: str = "device-1", balance: int = 0, **fields) -> User:
        user = User(device_id=device_id, **fields)
        await user.insert()
        await Wallet(user_id=user.id, credits_balance=balance, lifetime_credits=balance).insert()
        return user

    return _make


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_config
    from app.main import app
    from app.services.system_config import ConfigSnapshot

    app.dependency_overrides[get_config] = lambda: ConfigSnapshot(daily_limit_per_user=50)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
