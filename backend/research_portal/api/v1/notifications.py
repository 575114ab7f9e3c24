from fastapi import APIRouter, Depends, HTTPException

from research_portal.core.roles import get_current_profile
from research_portal.models.schemas import MarkReadRequest
from research_portal.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def get_notification_service() -> NotificationService:
    return NotificationService()


@router.get("")
async def list_notifications(
    limit: int = 50,
    profile: dict = Depends(get_current_profile),
    service: NotificationService = Depends(get_notification_service),
):
    """
    获取当前用户的通知列表（按 user_id 过滤，仅返回自己的记录）
    """
    rows = service.list_for_user(user_id=str(profile["id"]), limit=limit)
    return {"success": True, "data": rows}


@router.get("/unread-count")
async def unread_count(
    profile: dict = Depends(get_current_profile),
    service: NotificationService = Depends(get_notification_service),
):
    return {"success": True, "count": service.unread_count(user_id=str(profile["id"]))}


@router.put("/mark-read")
async def mark_read(
    body: MarkReadRequest,
    profile: dict = Depends(get_current_profile),
    service: NotificationService = Depends(get_notification_service),
):
    updated = service.mark_read(user_id=str(profile["id"]), notification_ids=body.ids)
    return {"success": True, "updated": updated}


@router.put("/read-all")
async def mark_all_read(
    profile: dict = Depends(get_current_profile),
    service: NotificationService = Depends(get_notification_service),
):
    updated = service.mark_all_read(user_id=str(profile["id"]))
    return {"success": True, "updated": updated}


@router.put("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    profile: dict = Depends(get_current_profile),
    service: NotificationService = Depends(get_notification_service),
):
    updated = service.mark_one_read(user_id=str(profile["id"]), notification_id=notification_id)
    if updated is None:
        # 中文注释: 不存在或不属于当前用户
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "data": updated}
