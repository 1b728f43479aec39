"""Read-only credit status for the app's credits badge and paywall."""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.user import User
from app.services import ledger, quota, wallets
from app.services.system_config import ConfigSnapshot

RECENT_TRANSACTIONS = 10


class StatusView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    device_id: str
    email: str | None = None
    plan_type: str
    is_active: bool
    revenuecat_customer_id: str | None = None
    credits_balance: int
    credits_reserved: int
    lifetime_credits: int
    daily_usage: int
    daily_limit: int
    can_use_ai: bool
    ai_available: bool
    recent_transactions: list[dict[str, Any]] = []


async def project(user: User, config: ConfigSnapshot) -> StatusView:
    """Combine wallet, today's usage and plan; no writes, no locks."""
    wallet = await wallets.get_wallet(user.id)
    balance = wallet.credits_balance if wallet else 0
    reserved = wallet.credits_reserved if wallet else 0
    lifetime = wallet.lifetime_credits if wallet else 0
    daily_usage = await quota.count_daily_usage(user.id)
    daily_limit = quota.resolve_daily_limit(user, config)
    recent = await ledger.recent_transactions(user.id, RECENT_TRANSACTIONS)
    return StatusView(
        user_id=str(user.id),
        device_id=user.device_id,
        email=user.email,
        plan_type=user.plan_type,
        is_active=user.is_active,
        revenuecat_customer_id=user.revenuecat_customer_id,
        credits_balance=balance,
        credits_reserved=reserved,
        lifetime_credits=lifetime,
        daily_usage=daily_usage,
        daily_limit=daily_limit,
        can_use_ai=user.is_active and balance > 0 and daily_usage < daily_limit,
        ai_available=config.is_available(),
        recent_transactions=[ledger.serialize_transaction(t) for t in recent],
    )
