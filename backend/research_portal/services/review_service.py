from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, HTTPException

from research_portal.core.config import PortalConfig
from research_portal.lib.api_client import supabase_admin
from research_portal.models.paper import PaperStatus
from research_portal.models.schemas import ReviewSubmitRequest
from research_portal.services.manuscript_service import ZERO_SCORES
from research_portal.services.notification_service import NotificationService
from research_portal.services.workflow_service import WorkflowService

logger = logging.getLogger("research_portal.reviews")

# 仍在进行中的邀请（同一审稿人 + 同一版本不允许重复）
OPEN_REVIEW_STATUSES = ("invited", "accepted")


class ReviewService:
    """
    审稿记录（reviews 表）：邀请 -> 接受/拒绝 -> 提交评分。

    中文注释:
    - 审稿状态同样采用 CAS：UPDATE reviews ... WHERE id = ? AND status = <旧值>，
      避免“重复提交/接受后又被拒绝”这类并发覆盖。
    """

    def __init__(self) -> None:
        self.client = supabase_admin
        self.workflow = WorkflowService()
        self.notifications = NotificationService()
        self.config = PortalConfig.from_env()

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def list_reviews(self, *, reviewer_id: Optional[str] = None, paper_id: Optional[str] = None) -> List[Dict[str, Any]]:
        q = self.client.table("reviews").select("*")
        if reviewer_id:
            q = q.eq("reviewer_id", reviewer_id)
        if paper_id:
            q = q.eq("paper_id", paper_id)
        resp = q.order("assigned_at", desc=True).execute()
        return getattr(resp, "data", None) or []

    def get_review(self, review_id: str) -> Dict[str, Any]:
        resp = self.client.table("reviews").select("*").eq("id", review_id).limit(1).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="Review not found")
        return rows[0]

    @staticmethod
    def _ensure_owner(review: Dict[str, Any], profile: Dict[str, Any]) -> None:
        roles = set(profile.get("roles") or [])
        if roles.intersection({"admin", "editor"}):
            return
        if str(review.get("reviewer_id")) != str(profile.get("id")):
            raise HTTPException(status_code=403, detail="You are not assigned to this review")

    def _update_if_status(self, review_id: str, expected: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = (
            self.client.table("reviews")
            .update(payload)
            .eq("id", review_id)
            .eq("status", expected)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=409, detail="Review was updated by another request")
        return rows[0]

    def _notify_editor(self, review: Dict[str, Any], *, title: str, message: str, type: str, background_tasks) -> None:
        try:
            paper = self.workflow.get_manuscript(str(review.get("paper_id")))
        except HTTPException:
            logger.warning("[Reviews] paper %s missing for review %s", review.get("paper_id"), review.get("id"))
            return
        if not paper.get("editor_id"):
            return
        self.notifications.notify_user(
            user_id=paper["editor_id"],
            title=title,
            message=message.replace("{title}", str(paper.get("title") or "")),
            type=type,
            related_id=paper.get("id"),
            background_tasks=background_tasks,
        )

    # --- 邀请 ---

    def invite_reviewer(
        self,
        *,
        paper_id: str,
        reviewer_id: str,
        due_date: Optional[str],
        changed_by: Optional[str],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        paper = self.workflow.get_manuscript(paper_id)
        resp = (
            self.client.table("user_profiles")
            .select("id,email,full_name")
            .eq("id", reviewer_id)
            .limit(1)
            .execute()
        )
        reviewers = getattr(resp, "data", None) or []
        if not reviewers:
            raise HTTPException(status_code=404, detail="Reviewer not found")
        reviewer = reviewers[0]

        version = int(paper.get("version") or 1)
        dup = (
            self.client.table("reviews")
            .select("id")
            .eq("paper_id", paper_id)
            .eq("reviewer_id", reviewer_id)
            .eq("version", version)
            .in_("status", list(OPEN_REVIEW_STATUSES))
            .limit(1)
            .execute()
        )
        if getattr(dup, "data", None):
            raise HTTPException(status_code=409, detail="Reviewer already has an open invitation for this version")

        self.workflow.transition_manuscript(
            manuscript_id=paper_id,
            to_status=PaperStatus.UNDER_REVIEW.value,
            changed_by=changed_by,
            comment=f"reviewer {reviewer_id} invited",
            current=paper,
        )

        due = due_date or (datetime.now(timezone.utc) + timedelta(days=self.config.review_due_days)).isoformat()
        try:
            ins = (
                self.client.table("reviews")
                .insert(
                    {
                        "paper_id": paper_id,
                        "reviewer_id": reviewer_id,
                        "reviewer_name": reviewer.get("full_name"),
                        "status": "invited",
                        "assigned_at": self._now(),
                        "due_date": due,
                        "version": version,
                        "scores": dict(ZERO_SCORES),
                        "recommendation": None,
                        "comments_to_author": "",
                        "comments_to_editor": "",
                    }
                )
                .execute()
            )
            rows = getattr(ins, "data", None) or []
            if not rows:
                raise RuntimeError("insert returned no rows")
        except Exception as e:
            logger.error("[Reviews] invite insert failed: %s", e)
            self.workflow.restore_manuscript_status(
                manuscript_id=paper_id,
                expected_status=PaperStatus.UNDER_REVIEW.value,
                previous=paper,
                changed_by=changed_by,
                reason="review invite failed",
            )
            raise HTTPException(status_code=500, detail="Failed to invite reviewer") from e

        review_id = rows[0].get("id")
        self.notifications.notify_user(
            user_id=reviewer_id,
            title="Review Request",
            message=(
                f'You have been invited to review the paper titled "{paper.get("title")}". '
                f"Please log in to your dashboard to accept or decline this request. Due date: {str(due)[:10]}"
            ),
            type="info",
            related_id=review_id,
            background_tasks=background_tasks,
        )
        return {"message": "Reviewer invited successfully", "review_id": review_id}

    # --- 审稿人响应 ---

    def respond(
        self,
        *,
        review_id: str,
        response: str,
        reason: Optional[str],
        profile: Dict[str, Any],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        review = self.get_review(review_id)
        self._ensure_owner(review, profile)
        if review.get("status") != "invited":
            raise HTTPException(status_code=409, detail=f"Invitation already {review.get('status')}")

        status = "accepted" if response == "accept" else "declined"
        self._update_if_status(
            review_id,
            "invited",
            {
                "status": status,
                "responded_at": self._now(),
                "decline_reason": reason if status == "declined" else None,
            },
        )
        if status == "accepted":
            self._notify_editor(
                review,
                title="Review Invitation Accepted",
                message=f"Reviewer {review.get('reviewer_name') or ''} has ACCEPTED the invitation for paper: {{title}}",
                type="success",
                background_tasks=background_tasks,
            )
        return {"message": f"Review invitation {status}", "status": status}

    # --- 提交评审 ---

    def submit_review(
        self,
        *,
        review_id: str,
        body: ReviewSubmitRequest,
        profile: Dict[str, Any],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        review = self.get_review(review_id)
        self._ensure_owner(review, profile)
        current = review.get("status")
        if current not in OPEN_REVIEW_STATUSES:
            raise HTTPException(status_code=409, detail=f"Review cannot be submitted from status '{current}'")

        updated = self._update_if_status(
            review_id,
            str(current),
            {
                "scores": body.scores.model_dump(),
                "recommendation": body.recommendation,
                "comments_to_author": body.comments_to_author,
                "comments_to_editor": body.comments_to_editor,
                "status": "completed",
                "completed_at": self._now(),
            },
        )
        self._notify_editor(
            review,
            title="Review Submitted",
            message=f"A review has been submitted for paper: {{title}}. Reviewer: {review.get('reviewer_name') or ''}",
            type="success",
            background_tasks=background_tasks,
        )
        return {"message": "Review submitted", "review": updated}
