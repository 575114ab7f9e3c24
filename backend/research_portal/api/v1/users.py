from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from research_portal.core.roles import EDITORIAL_ROLES, get_current_profile, is_admin, require_any_role
from research_portal.models.schemas import FavoriteToggleRequest, UpdateRolesRequest, UpdateUserJournalsRequest
from research_portal.services.user_service import UserService

router = APIRouter(prefix="/users", tags=["Users"])


def get_user_service() -> UserService:
    return UserService()


def _ensure_self_or_admin(profile: dict, user_id: str) -> None:
    if str(profile.get("id")) != str(user_id) and not is_admin(profile):
        raise HTTPException(status_code=403, detail="You can only modify your own profile")


@router.get("")
async def list_users(
    role: Optional[str] = None,
    _profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: UserService = Depends(get_user_service),
):
    return service.list_users(role=role)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    _profile: dict = Depends(get_current_profile),
    service: UserService = Depends(get_user_service),
):
    return service.get_user(user_id)


@router.put("/{user_id}/roles")
async def update_roles(
    user_id: str,
    body: UpdateRolesRequest,
    background_tasks: BackgroundTasks,
    _profile: dict = Depends(require_any_role(["admin"])),
    service: UserService = Depends(get_user_service),
):
    return service.update_roles(user_id, body.roles, background_tasks=background_tasks)


@router.put("/{user_id}/journals")
async def update_journals(
    user_id: str,
    body: UpdateUserJournalsRequest,
    _profile: dict = Depends(require_any_role(["admin"])),
    service: UserService = Depends(get_user_service),
):
    return service.update_journals(user_id, body)


@router.put("/{user_id}/favorites")
async def toggle_favorite(
    user_id: str,
    body: FavoriteToggleRequest,
    profile: dict = Depends(get_current_profile),
    service: UserService = Depends(get_user_service),
):
    _ensure_self_or_admin(profile, user_id)
    return service.toggle_favorite(user_id, body.paper_id)


@router.put("/{user_id}")
async def update_profile(
    user_id: str,
    full_name: Optional[str] = Form(None),
    department: Optional[str] = Form(None),
    faculty: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    bio: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    orcid: Optional[str] = Form(None),
    photo: Optional[UploadFile] = File(None),
    profile: dict = Depends(get_current_profile),
    service: UserService = Depends(get_user_service),
):
    _ensure_self_or_admin(profile, user_id)
    photo_file = None
    if photo is not None:
        content = await photo.read()
        if content:
            photo_file = (photo.filename or "avatar.png", content, photo.content_type or "image/png")

    fields = {
        "full_name": full_name,
        "department": department,
        "faculty": faculty,
        "phone": phone,
        "bio": bio,
        "title": title,
        "orcid": orcid,
    }
    return service.update_profile(user_id, fields, photo=photo_file)


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    _profile: dict = Depends(require_any_role(["admin"])),
    service: UserService = Depends(get_user_service),
):
    service.delete_user(user_id)
    return {"message": "User deleted successfully"}
