"""RevenueCat purchase events: idempotent credit apply and plan transitions."""

from dataclasses import dataclass
from datetime import datetime

from beanie import PydanticObjectId
from beanie.operators import Set
from pydantic import BaseModel, ConfigDict

from app.core.audit import log_event
from app.core.logging import get_logger
from app.models.ledger_transaction import TransactionType
from app.models.user import User
from app.services import ledger, wallets

log = get_logger(__name__)

# Credits granted per store product (localized ids share the base grant).
PRODUCT_CREDITS = {
    "buildsight_credit_single": 1,
    "buildsight_credit_pack10": 10,
    "buildsight_pro_monthly": 50,
    "buildsight_credit_single_eur": 1,
    "buildsight_credit_pack10_eur": 10,
    "buildsight_pro_monthly_eur": 50,
}

PRODUCT_PLAN_TYPE = {
    "buildsight_credit_single": "single",
    "buildsight_credit_pack10": "pack10",
    "buildsight_pro_monthly": "pro_monthly",
    "buildsight_credit_single_eur": "single",
    "buildsight_credit_pack10_eur": "pack10",
    "buildsight_pro_monthly_eur": "pro_monthly",
}

PURCHASE_EVENTS = ("INITIAL_PURCHASE", "NON_RENEWING_PURCHASE")
RENEWAL_EVENTS = ("RENEWAL",)
DOWNGRADE_EVENTS = ("CANCELLATION", "EXPIRATION")

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
ORPHANED = "orphaned"


class PurchaseEvent(BaseModel):
    """Subset of the RevenueCat webhook `event` object the ledger uses."""
    model_config = ConfigDict(extra="ignore")

    type: str
    app_user_id: str | None = None
    product_id: str | None = None
    transaction_id: str | None = None
    purchased_at_ms: int | None = None
    expiration_at_ms: int | None = None
    new_app_user_id: str | None = None


@dataclass
class ApplyResult:
    status: str
    event_type: str
    user_id: str | None = None
    credits: int = 0
    credits_balance: int | None = None
    plan_type: str | None = None
    transaction_id: str | None = None


def payment_key(transaction_id: str) -> str:
    """Purchases and renewals share one key space per user."""
    return f"payment:{transaction_id}"


def credits_for_product(product_id: str | None) -> int:
    return PRODUCT_CREDITS.get(product_id or "", 0)


async def resolve_user(app_user_id: str | None) -> User | None:
    """app_user_id is the device id, or a RevenueCat alias linked earlier."""
    if not app_user_id:
        return None
    user = await User.find_one(User.device_id == app_user_id)
    if user:
        return user
    return await User.find_one(User.revenuecat_customer_id == app_user_id)


async def apply_purchase_event(
    user: User,
    event_type: str,
    product_id: str | None,
    transaction_id: str | None,
    credits_for_product: int,
) -> ApplyResult:
    """
    Credit a purchase or renewal once per (user, transaction_id).

    The wallet records payment:<transaction_id> in the same update that adds
    the credits, so webhook retries and concurrent deliveries credit once. The
    ledger row follows as an insert-once write; if it or the credit failed, the
    provider's retry completes whichever part is missing.
    """
    if credits_for_product <= 0 or not transaction_id:
        log.warning(
            "purchase_ignored",
            user_id=str(user.id),
            event_type=event_type,
            product_id=product_id,
            transaction_id=transaction_id,
        )
        return ApplyResult(status=IGNORED, event_type=event_type, user_id=str(user.id), transaction_id=transaction_id)

    transaction_type = (
        TransactionType.SUBSCRIPTION_RENEWAL if event_type in RENEWAL_EVENTS else TransactionType.PURCHASE
    )
    label = "Renewal" if transaction_type == TransactionType.SUBSCRIPTION_RENEWAL else "Purchase"
    key = payment_key(transaction_id)

    await wallets.ensure_wallet(user.id)
    change = await wallets.apply_once(
        user.id,
        key,
        wallets.GRANT,
        balance_delta=credits_for_product,
        lifetime_delta=credits_for_product,
    )
    # Written on every delivery so a row lost after the credit is restored by the retry.
    record = await ledger.record_credit(
        user.id,
        credits_for_product,
        transaction_type,
        transaction_id,
        key,
        f"{label}: {product_id} ({credits_for_product} credits)",
        change.wallet.credits_balance,
    )
    if not change.applied:
        log.info("purchase_duplicate", user_id=str(user.id), transaction_id=transaction_id, event_type=event_type)
        return ApplyResult(
            status=DUPLICATE,
            event_type=event_type,
            user_id=str(user.id),
            credits=record.amount,
            credits_balance=record.balance_after,
            transaction_id=transaction_id,
        )

    wallet = change.wallet
    log.info(
        "purchase_applied",
        user_id=str(user.id),
        transaction_id=transaction_id,
        transaction_type=transaction_type.value,
        credits=credits_for_product,
        credits_balance=wallet.credits_balance,
    )
    return ApplyResult(
        status=APPLIED,
        event_type=event_type,
        user_id=str(user.id),
        credits=credits_for_product,
        credits_balance=wallet.credits_balance,
        transaction_id=transaction_id,
    )


async def set_plan(user: User, plan_type: str) -> User:
    """Setting a label is naturally idempotent; replays rewrite the same value."""
    if user.plan_type != plan_type:
        log.info("plan_changed", user_id=str(user.id), old=user.plan_type, new=plan_type)
    await user.set({User.plan_type: plan_type, User.updated_at: datetime.utcnow()})
    return user


async def _link_customer_id(user_id: PydanticObjectId, app_user_id: str) -> None:
    """Remember the RevenueCat id the first time we see it (never overwrite)."""
    await User.find_one(User.id == user_id, User.revenuecat_customer_id == None).update(  # noqa: E711
        Set({User.revenuecat_customer_id: app_user_id})
    )


async def handle_event(event: PurchaseEvent) -> ApplyResult:
    """Route one webhook event. Unknown users are acknowledged and audit-logged, not retried."""
    event_type = event.type
    log.info(
        "webhook_event",
        event_type=event_type,
        app_user_id=event.app_user_id,
        product_id=event.product_id,
        transaction_id=event.transaction_id,
    )
    user = await resolve_user(event.app_user_id)
    if not user:
        log.error("webhook_orphaned", event_type=event_type, app_user_id=event.app_user_id)
        await log_event(
            None,
            "webhook_orphaned",
            "payment",
            event.transaction_id,
            {"event_type": event_type, "app_user_id": event.app_user_id, "product_id": event.product_id},
        )
        return ApplyResult(status=ORPHANED, event_type=event_type, transaction_id=event.transaction_id)

    if event.app_user_id:
        await _link_customer_id(user.id, event.app_user_id)

    if event_type in PURCHASE_EVENTS or event_type in RENEWAL_EVENTS:
        credits = credits_for_product(event.product_id)
        result = await apply_purchase_event(user, event_type, event.product_id, event.transaction_id, credits)
        # Replays re-assert the label, restoring a plan write lost after the credit.
        if result.status in (APPLIED, DUPLICATE) and event_type in PURCHASE_EVENTS:
            plan_type = PRODUCT_PLAN_TYPE.get(event.product_id or "", "single")
            await set_plan(user, plan_type)
            result.plan_type = plan_type
        if result.status in (APPLIED, DUPLICATE):
            await log_event(
                str(user.id),
                f"purchase_{result.status}",
                "payment",
                event.transaction_id,
                {"event_type": event_type, "product_id": event.product_id, "credits": result.credits},
            )
        return result

    if event_type in DOWNGRADE_EVENTS:
        await set_plan(user, "free")
        return ApplyResult(status=APPLIED, event_type=event_type, user_id=str(user.id), plan_type="free")

    if event_type == "PRODUCT_CHANGE":
        plan_type = PRODUCT_PLAN_TYPE.get(event.product_id or "", "free")
        await set_plan(user, plan_type)
        return ApplyResult(status=APPLIED, event_type=event_type, user_id=str(user.id), plan_type=plan_type)

    if event_type == "BILLING_ISSUE":
        log.warning("billing_issue", user_id=str(user.id), product_id=event.product_id)
        await log_event(str(user.id), "billing_issue", "payment", event.transaction_id, {"product_id": event.product_id})
        return ApplyResult(status=IGNORED, event_type=event_type, user_id=str(user.id))

    if event_type == "SUBSCRIBER_ALIAS":
        if event.new_app_user_id:
            await user.set({User.revenuecat_customer_id: event.new_app_user_id, User.updated_at: datetime.utcnow()})
        return ApplyResult(status=APPLIED, event_type=event_type, user_id=str(user.id))

    log.info("webhook_unhandled", event_type=event_type, user_id=str(user.id))
    return ApplyResult(status=IGNORED, event_type=event_type, user_id=str(user.id))
