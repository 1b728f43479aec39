from fastapi import APIRouter, Depends, Response, status

from app.deps import get_device_id
from app.services import users as users_service

router = APIRouter()


@router.post("/init")
async def init_user(response: Response, device_id: str = Depends(get_device_id)):
    """Create the device's user and wallet on first launch; 200 with current state afterwards."""
    user, wallet, created = await users_service.init_user(device_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return users_service.user_summary(user, wallet, created)
