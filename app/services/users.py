from pymongo.errors import DuplicateKeyError

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.ledger_transaction import TransactionType
from app.models.user import User
from app.models.wallet import Wallet
from app.services import ledger, wallets

log = get_logger(__name__)


async def get_user_by_device(device_id: str) -> User | None:
    return await User.find_one(User.device_id == device_id)


def trial_key(user: User) -> str:
    return f"trial:{user.id}"


async def _grant_trial_credits(user: User) -> Wallet:
    """Credit the signup grant once; an init retry finishes a grant that failed halfway."""
    credits = user.pending_trial_credits
    key = trial_key(user)
    change = await wallets.apply_once(
        user.id,
        key,
        wallets.GRANT,
        balance_delta=credits,
        lifetime_delta=credits,
    )
    await ledger.record_credit(
        user.id,
        credits,
        TransactionType.TRIAL,
        str(user.id),
        key,
        f"Welcome credits ({credits})",
        change.wallet.credits_balance,
    )
    await user.set({User.pending_trial_credits: 0})
    if change.applied:
        log.info("trial_credits_granted", user_id=str(user.id), credits=credits)
    return change.wallet


async def init_user(device_id: str) -> tuple[User, Wallet, bool]:
    """Get or create the user for a device and make sure it has a wallet. Returns (user, wallet, created)."""
    created = False
    user = await get_user_by_device(device_id)
    if not user:
        user = User(device_id=device_id, pending_trial_credits=max(get_settings().initial_credits, 0))
        try:
            await user.insert()
            created = True
            log.info("user_created", user_id=str(user.id), device_id=device_id)
        except DuplicateKeyError:
            user = await get_user_by_device(device_id)
            if user is None:
                raise
    wallet = await wallets.ensure_wallet(user.id)
    if user.pending_trial_credits > 0:
        wallet = await _grant_trial_credits(user)
    return user, wallet, created


def user_summary(user: User, wallet: Wallet, created: bool = False) -> dict:
    return {
        "userId": str(user.id),
        "deviceId": user.device_id,
        "email": user.email,
        "planType": user.plan_type,
        "isActive": user.is_active,
        "revenuecatCustomerId": user.revenuecat_customer_id,
        "creditsBalance": wallet.credits_balance,
        "creditsReserved": wallet.credits_reserved,
        "lifetimeCredits": wallet.lifetime_credits,
        "isNewUser": created,
    }
