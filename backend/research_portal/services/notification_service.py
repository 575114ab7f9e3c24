from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from fastapi import BackgroundTasks
from pydantic import ValidationError

from research_portal.core.mail import email_service
from research_portal.lib.api_client import supabase_admin
from research_portal.models.notification import NotificationCreate

logger = logging.getLogger("research_portal.notifications")

PROJECT_EMAIL_SUBJECTS = {
    "REVIEWER_ASSIGNED": "New Review Assignment",
    "PROPOSAL_ACCEPTED": "Your Research Proposal Has Been Accepted",
    "PROPOSAL_REJECTED": "Update on Your Research Proposal",
    "REPORT_ACCEPTED": "Your Final Report Has Been Accepted",
    "REPORT_REJECTED": "Your Final Report Requires Revision",
}


class NotificationService:
    """
    通知服务：站内通知（notifications 表）+ 邮件

    中文注释:
    1) 写入使用 supabase_admin（service_role），避免 RLS 导致写入失败。
    2) 通知是“旁路”：任何写入/发信失败只记日志，绝不打断调用方的主流程。
    3) 读取/更新一律带 user_id 过滤，用户只能操作自己的通知。
    """

    def __init__(self) -> None:
        self.client = supabase_admin
        self.email = email_service

    # --- 写入 ---

    def create_notification(
        self,
        *,
        user_id: str | None,
        title: str,
        message: str,
        type: str = "info",
        related_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        try:
            payload = NotificationCreate(
                user_id=str(user_id),
                title=title,
                message=message,
                type=type,
                related_id=str(related_id) if related_id else None,
            ).model_dump()
            res = self.client.table("notifications").insert(payload).execute()
            rows = getattr(res, "data", None) or []
            return rows[0] if rows else None
        except ValidationError as e:
            logger.warning("[Notifications] invalid payload for %s: %s", user_id, e)
            return None
        except Exception as e:
            logger.warning("[Notifications] create failed for %s: %s", user_id, e)
            return None

    def _dispatch_email(
        self,
        background_tasks: BackgroundTasks | None,
        *,
        to_email: str,
        subject: str,
        template_name: str,
        context: Dict[str, Any],
    ) -> None:
        try:
            if background_tasks is not None:
                background_tasks.add_task(
                    self.email.send_email_background, to_email, subject, template_name, context
                )
            else:
                self.email.send_email_background(to_email, subject, template_name, context)
        except Exception as e:
            logger.warning("[Notifications] email to %s failed: %s", to_email, e)

    def _get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = (
                self.client.table("user_profiles")
                .select("id,email,full_name")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
            rows = getattr(resp, "data", None) or []
            return rows[0] if rows else None
        except Exception as e:
            logger.warning("[Notifications] profile lookup failed for %s: %s", user_id, e)
            return None

    def notify_user(
        self,
        *,
        user_id: str | None,
        title: str,
        message: str,
        type: str = "info",
        related_id: Optional[str] = None,
        background_tasks: BackgroundTasks | None = None,
        send_email: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """
        站内通知 + 邮件（用户有邮箱时）。
        """
        if not user_id:
            return None
        row = self.create_notification(
            user_id=user_id, title=title, message=message, type=type, related_id=related_id
        )
        if not send_email:
            return row
        profile = self._get_profile(str(user_id))
        email = (profile or {}).get("email")
        if email:
            self._dispatch_email(
                background_tasks,
                to_email=email,
                subject=title,
                template_name="notification.html",
                context={"name": (profile or {}).get("full_name"), "message": message},
            )
        return row

    def notify_users(self, user_ids: Iterable[str | None], **kwargs: Any) -> int:
        sent = 0
        for uid in dict.fromkeys(u for u in user_ids if u):
            if self.notify_user(user_id=uid, **kwargs) is not None:
                sent += 1
        return sent

    @staticmethod
    def paper_author_ids(paper: Dict[str, Any]) -> List[str]:
        """
        主作者 + 已注册共同作者（去重，保持顺序）
        """
        ids: List[str] = []
        if paper.get("author_id"):
            ids.append(str(paper["author_id"]))
        for co in paper.get("co_authors") or []:
            if isinstance(co, dict) and co.get("is_registered") and co.get("user_id"):
                ids.append(str(co["user_id"]))
        return list(dict.fromkeys(ids))

    def notify_paper_authors(self, paper: Dict[str, Any], **kwargs: Any) -> int:
        return self.notify_users(self.paper_author_ids(paper), **kwargs)

    def editor_ids(self) -> List[str]:
        try:
            resp = (
                self.client.table("user_profiles")
                .select("id,roles")
                .contains("roles", ["editor"])
                .execute()
            )
            return [str(r["id"]) for r in (getattr(resp, "data", None) or []) if r.get("id")]
        except Exception as e:
            logger.warning("[Notifications] editor lookup failed: %s", e)
            return []

    def notify_all_editors(self, **kwargs: Any) -> int:
        return self.notify_users(self.editor_ids(), **kwargs)

    def send_project_email(
        self,
        *,
        to_email: str | None,
        email_type: str,
        project_title: str,
        name: str | None = None,
        background_tasks: BackgroundTasks | None = None,
    ) -> bool:
        """
        研究项目流程邮件（REVIEWER_ASSIGNED / PROPOSAL_* / REPORT_*）
        """
        if not to_email:
            logger.info("[Notifications] skip %s email: recipient has no email", email_type)
            return False
        subject = PROJECT_EMAIL_SUBJECTS.get(email_type, "Research Project Update")
        self._dispatch_email(
            background_tasks,
            to_email=to_email,
            subject=subject,
            template_name="project_notification.html",
            context={"type": email_type, "project_title": project_title, "name": name},
        )
        return True

    # --- 读取/已读 ---

    def list_for_user(self, *, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        res = (
            self.client.table("notifications")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return getattr(res, "data", None) or []

    def unread_count(self, *, user_id: str) -> int:
        res = (
            self.client.table("notifications")
            .select("id")
            .eq("user_id", user_id)
            .eq("is_read", False)
            .execute()
        )
        return len(getattr(res, "data", None) or [])

    def mark_read(self, *, user_id: str, notification_ids: List[str]) -> int:
        # user_id 过滤保证只能改自己的通知
        res = (
            self.client.table("notifications")
            .update({"is_read": True})
            .in_("id", notification_ids)
            .eq("user_id", user_id)
            .execute()
        )
        return len(getattr(res, "data", None) or [])

    def mark_one_read(self, *, user_id: str, notification_id: str) -> Optional[Dict[str, Any]]:
        res = (
            self.client.table("notifications")
            .update({"is_read": True})
            .eq("id", notification_id)
            .eq("user_id", user_id)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return rows[0] if rows else None

    def mark_all_read(self, *, user_id: str) -> int:
        res = (
            self.client.table("notifications")
            .update({"is_read": True})
            .eq("user_id", user_id)
            .eq("is_read", False)
            .execute()
        )
        return len(getattr(res, "data", None) or [])
