# routers/video.py — Live video-room occupancy over REST
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from permissions import ensure_can_view

router = APIRouter(prefix="/api/v1/video", tags=["Video"])


@router.get("/room-status/{work_order_id}")
async def room_status(
    work_order_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await ensure_can_view(db, work_order_id, user)
    status = request.app.state.collaboration.room_status(work_order_id)
    return {
        "workOrderId": status["workOrderId"],
        "count": status["count"],
        "isActive": status["isActive"],
    }
