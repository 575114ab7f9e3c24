from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from research_portal.core.config import PortalConfig
from research_portal.core.mail import email_service
from research_portal.core.roles import ALLOWED_USER_ROLES
from research_portal.lib.api_client import supabase_admin
from research_portal.models.schemas import UpdateUserJournalsRequest
from research_portal.services.notification_service import NotificationService
from research_portal.services.storage_service import file_extension, timestamp_prefix, upload_bytes

logger = logging.getLogger("research_portal.users")

# 允许用户自行修改的 profile 字段
EDITABLE_PROFILE_FIELDS = ("full_name", "department", "faculty", "phone", "bio", "title", "orcid")


class UserService:
    def __init__(self) -> None:
        self.client = supabase_admin
        self.notifications = NotificationService()
        self.email = email_service
        self.config = PortalConfig.from_env()

    def _get_row(self, user_id: str) -> Dict[str, Any]:
        resp = self.client.table("user_profiles").select("*").eq("id", user_id).limit(1).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="User not found")
        return rows[0]

    def _update(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.client.table("user_profiles").update(payload).eq("id", user_id).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="User not found")
        return rows[0]

    def list_users(self, *, role: Optional[str] = None) -> List[Dict[str, Any]]:
        q = self.client.table("user_profiles").select("*")
        if role:
            q = q.contains("roles", [role])
        resp = q.order("created_at", desc=True).execute()
        return getattr(resp, "data", None) or []

    def get_user(self, user_id: str) -> Dict[str, Any]:
        """
        用户详情：把 editor/reviewer/assigned journals 的 id 列表展开为期刊对象，
        并附带该用户在各期刊的稿件数量。
        """
        user = self._get_row(user_id)
        keys = ("editor_journals", "reviewer_journals", "assigned_journals")
        ids = {str(j) for k in keys for j in (user.get(k) or []) if j}

        journals: Dict[str, Dict[str, Any]] = {}
        if ids:
            resp = self.client.table("journals").select("id,name").in_("id", sorted(ids)).execute()
            journals = {str(j.get("id")): j for j in getattr(resp, "data", None) or []}

        out = dict(user)
        for k in keys:
            out[k] = [journals.get(str(j), {"id": j, "name": None}) for j in (user.get(k) or []) if j]

        papers = (
            self.client.table("manuscripts")
            .select("journal_id")
            .eq("author_id", user_id)
            .execute()
        )
        out["paper_counts"] = dict(
            Counter(str(p.get("journal_id")) for p in getattr(papers, "data", None) or [] if p.get("journal_id"))
        )
        return out

    def update_roles(self, user_id: str, roles: List[str], *, background_tasks=None) -> Dict[str, Any]:
        cleaned = list(dict.fromkeys(r.strip() for r in roles if r and r.strip()))
        if not cleaned:
            raise HTTPException(status_code=400, detail="roles must be a non-empty list")
        invalid = sorted(set(cleaned) - ALLOWED_USER_ROLES)
        if invalid:
            raise HTTPException(status_code=400, detail=f"Invalid roles: {invalid}")

        updated = self._update(user_id, {"roles": cleaned})
        self.notifications.notify_user(
            user_id=user_id,
            title="Roles Updated",
            message=f"Your roles have been updated to: {', '.join(cleaned)}",
            type="info",
            background_tasks=background_tasks,
        )
        return updated

    def update_journals(self, user_id: str, body: UpdateUserJournalsRequest) -> Dict[str, Any]:
        payload = body.model_dump(exclude_none=True)
        if not payload:
            raise HTTPException(status_code=400, detail="No journal lists provided")
        return self._update(user_id, payload)

    def toggle_favorite(self, user_id: str, paper_id: str) -> Dict[str, Any]:
        user = self._get_row(user_id)
        favorites = [str(f) for f in (user.get("favorites") or [])]
        if paper_id in favorites:
            favorites.remove(paper_id)
            favorited = False
        else:
            favorites.append(paper_id)
            favorited = True
        self._update(user_id, {"favorites": favorites})
        return {"favorites": favorites, "is_favorite": favorited}

    def update_profile(
        self,
        user_id: str,
        fields: Dict[str, Any],
        *,
        photo: tuple[str, bytes, str] | None = None,
    ) -> Dict[str, Any]:
        """
        photo 为 (filename, content, content_type)，上传到 avatars bucket。
        """
        payload = {k: v for k, v in fields.items() if k in EDITABLE_PROFILE_FIELDS and v is not None}
        if photo is not None:
            filename, content, content_type = photo
            path = f"{user_id}/{timestamp_prefix()}.{file_extension(filename, default='png')}"
            try:
                payload["photo_url"] = upload_bytes(
                    bucket=self.config.avatar_bucket,
                    path=path,
                    content=content,
                    content_type=content_type or "image/png",
                )
            except Exception as e:
                logger.error("[Users] avatar upload failed: %s", e)
                raise HTTPException(status_code=500, detail="Failed to upload photo") from e
        if not payload:
            raise HTTPException(status_code=400, detail="No profile fields provided")
        return self._update(user_id, payload)

    def delete_user(self, user_id: str) -> None:
        resp = self.client.table("user_profiles").delete().eq("id", user_id).execute()
        if not (getattr(resp, "data", None) or []):
            raise HTTPException(status_code=404, detail="User not found")
        try:
            self.client.auth.admin.delete_user(user_id)
        except Exception as e:
            # 中文注释: profile 已删除；auth 侧失败只记录，由管理员在 Dashboard 清理
            logger.warning("[Users] auth user %s delete failed: %s", user_id, e)

    def accept_invite(self, *, token: str, password: str, full_name: Optional[str] = None) -> Dict[str, Any]:
        """
        受邀审稿人设置密码并激活账号。
        """
        email = self.email.verify_token(token)
        if not email:
            raise HTTPException(status_code=400, detail="Invitation link is invalid or has expired")

        resp = (
            self.client.table("user_profiles")
            .select("id,email,status,full_name")
            .eq("email", str(email).lower())
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="Invited user not found")
        user = rows[0]
        if user.get("status") == "active":
            raise HTTPException(status_code=409, detail="Invitation already accepted")

        try:
            self.client.auth.admin.update_user_by_id(
                str(user["id"]), {"password": password, "email_confirm": True}
            )
        except Exception as e:
            logger.error("[Users] set password for %s failed: %s", user["id"], e)
            raise HTTPException(status_code=500, detail="Failed to activate account") from e

        payload: Dict[str, Any] = {"status": "active"}
        if full_name and full_name.strip():
            payload["full_name"] = full_name.strip()
        self._update(str(user["id"]), payload)
        return {"message": "Account activated", "email": email}
