from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.deps import get_config, get_current_user
from app.models.user import User
from app.services import ledger as ledger_service
from app.services import reservations as reservations_service
from app.services import status as status_service
from app.services.system_config import ConfigSnapshot

router = APIRouter()


class ReserveRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    request_id: str | None = None  # client-generated; server generates one when absent
    project_type: str | None = Field(default=None, max_length=64)
    country_code: str | None = Field(default=None, max_length=8)


class FinalizeRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    request_id: str
    success: bool = True
    latency_ms: int | None = Field(default=None, ge=0)
    response_tokens: int | None = Field(default=None, ge=0)
    reason: str | None = None


@router.post("/reserve")
async def reserve_credit(
    body: ReserveRequest | None = None,
    user: User = Depends(get_current_user),
    config: ConfigSnapshot = Depends(get_config),
):
    """Hold one credit before the AI call; returns the requestId to finalize with."""
    body = body or ReserveRequest()
    result = await reservations_service.reserve(
        user,
        config,
        request_id=body.request_id,
        project_type=body.project_type,
        country_code=body.country_code,
    )
    return {
        "requestId": result.request_id,
        "creditsBalance": result.credits_balance,
        "creditsReserved": result.credits_reserved,
        "duplicate": result.duplicate,
    }


@router.post("/finalize")
async def finalize_credit(body: FinalizeRequest, user: User = Depends(get_current_user)):
    """Report the AI call outcome: success spends the credit, failure refunds it."""
    reservation = await reservations_service.complete(
        body.request_id,
        user.id,
        success=body.success,
        latency_ms=body.latency_ms,
        reason=body.reason,
        response_tokens=body.response_tokens,
    )
    return {"ok": True, "requestId": reservation.request_id, "status": reservation.status.value}


@router.get("/status")
async def credits_status(
    user: User = Depends(get_current_user),
    config: ConfigSnapshot = Depends(get_config),
):
    """Balance, reserved, plan and today's quota for the calling device."""
    view = await status_service.project(user, config)
    return view.model_dump(by_alias=True)


@router.get("/ledger")
async def credits_ledger(
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    page = await ledger_service.list_transactions(user.id, limit, offset)
    return {
        "entries": page.items,
        "limit": page.limit,
        "offset": page.offset,
        "total": page.total,
        "hasMore": page.has_more,
    }


@router.post("/restore")
async def restore_purchases(user: User = Depends(get_current_user)):
    """Rebuild client credit state from the ledger (after reinstall or device restore)."""
    return await ledger_service.restore_summary(user.id)
