import orjson
from fastapi import APIRouter, Header, Request
from pydantic import ValidationError

from app.core.config import get_settings
from app.core.exceptions import UnauthorizedError
from app.core.logging import get_logger
from app.core.security import verify_webhook_signature
from app.services import purchases as purchases_service

router = APIRouter()
log = get_logger(__name__)


@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    x_revenuecat_signature: str | None = Header(default=None, alias="X-RevenueCat-Signature"),
):
    """
    RevenueCat webhook: purchases, renewals, cancellations.

    Once authenticated, always answers 200, even when processing fails: the
    provider can only retry, and retries are already idempotent. Failures are
    logged for manual follow-up.
    """
    body = await request.body()
    secret = get_settings().revenuecat_webhook_secret
    if secret and not verify_webhook_signature(body, x_revenuecat_signature, secret):
        log.warning("webhook_invalid_signature")
        raise UnauthorizedError("Invalid signature")

    try:
        payload = orjson.loads(body)
        event_data = payload.get("event") if isinstance(payload, dict) else None
        if not event_data:
            return {"status": "ok", "warning": "No event in payload"}
        event = purchases_service.PurchaseEvent.model_validate(event_data)
    except (orjson.JSONDecodeError, ValidationError) as e:
        log.error("webhook_malformed", error=str(e))
        return {"status": "ok", "warning": "Malformed event"}

    try:
        result = await purchases_service.handle_event(event)
    except Exception as e:
        log.exception("webhook_processing_error", event_type=event.type, transaction_id=event.transaction_id)
        return {"status": "error", "error": "Processing error", "details": str(e)}

    return {
        "status": "ok",
        "result": result.status,
        "eventType": result.event_type,
        "userId": result.user_id,
        "credits": result.credits,
    }
