from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from fastapi import BackgroundTasks, HTTPException

from research_portal.core.config import PortalConfig
from research_portal.core.mail import email_service
from research_portal.lib.api_client import supabase_admin
from research_portal.models.paper import (
    DECISION_LABELS,
    DECISION_TARGET_STATUS,
    FINAL_SUBMISSION_SOURCES,
    PaperStatus,
    decision_notification,
    normalize_paper_status,
)
from research_portal.services.notification_service import NotificationService
from research_portal.services.storage_service import safe_filename, timestamp_prefix, upload_bytes
from research_portal.services.workflow_service import WorkflowService

logger = logging.getLogger("research_portal.manuscripts")

UploadedFile = Tuple[str, bytes, str]

ZERO_SCORES = {"originality": 0, "methodology": 0, "technical": 0, "clarity": 0, "references": 0}


def _parse_list(raw: Any) -> List[Any]:
    """
    表单里的数组字段以 JSON 字符串提交；解析失败按空列表处理。
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("[Manuscripts] failed to parse list field: %r", raw)
        return []
    return parsed if isinstance(parsed, list) else []


class ManuscriptService:
    """
    期刊稿件流程：投稿 -> 分配编辑 -> 审稿 -> 决定 -> 修回 -> 出版。

    中文注释:
    - 状态写入统一走 WorkflowService（状态机 + CAS + 审计）。
    - reviews 表是审稿人的唯一数据来源，稿件行不再冗余保存审稿人数组。
    """

    def __init__(self) -> None:
        self.client = supabase_admin
        self.workflow = WorkflowService()
        self.notifications = NotificationService()
        self.email = email_service
        self.config = PortalConfig.from_env()

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _store(self, paper_key: str, file: UploadedFile) -> Dict[str, Any]:
        filename, content, content_type = file
        path = f"papers/{paper_key}/{timestamp_prefix()}_{safe_filename(filename)}"
        url = upload_bytes(
            bucket=self.config.manuscript_bucket,
            path=path,
            content=content,
            content_type=content_type or "application/octet-stream",
        )
        return {"url": url, "original_name": filename, "mime_type": content_type}

    def _profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        resp = (
            self.client.table("user_profiles")
            .select("id,email,full_name,photo_url")
            .eq("email", email.strip().lower())
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def next_manuscript_id(self) -> str:
        resp = self.client.table("manuscripts").select("id", count="exact").execute()
        count = getattr(resp, "count", None)
        if count is None:
            count = len(getattr(resp, "data", None) or [])
        year = datetime.now(timezone.utc).year
        return f"{self.config.manuscript_id_prefix}-{year}-{int(count) + 1:03d}"

    # --- 投稿 ---

    def _enrich_co_authors(
        self,
        co_authors: List[Any],
        *,
        paper_title: str,
        submitter_name: str,
        background_tasks: BackgroundTasks | None,
    ) -> List[Dict[str, Any]]:
        enriched: List[Dict[str, Any]] = []
        for entry in co_authors:
            if not isinstance(entry, dict):
                continue
            email = str(entry.get("email") or "").strip().lower()
            existing = self._profile_by_email(email) if email else None
            if existing:
                enriched.append(
                    {
                        **entry,
                        "user_id": existing["id"],
                        "is_registered": True,
                        "photo_url": existing.get("photo_url"),
                    }
                )
                continue
            if email:
                context = {
                    "name": entry.get("name"),
                    "paper_title": paper_title,
                    "submitter_name": submitter_name,
                }
                if background_tasks is not None:
                    background_tasks.add_task(
                        self.email.send_email_background,
                        email,
                        "Co-Author Invitation - Research Portal",
                        "coauthor_invitation.html",
                        context,
                    )
                else:
                    self.email.send_email_background(
                        email, "Co-Author Invitation - Research Portal", "coauthor_invitation.html", context
                    )
            enriched.append({**entry, "user_id": None, "is_registered": False})
        return enriched

    def submit_manuscript(
        self,
        *,
        author: Dict[str, Any],
        title: str,
        abstract: Optional[str],
        manuscripts: List[UploadedFile],
        cover_letter: Optional[UploadedFile] = None,
        author_name: Optional[str] = None,
        department: Optional[str] = None,
        paper_type: Optional[str] = None,
        keywords: Any = None,
        co_authors: Any = None,
        journal_id: Optional[str] = None,
        journal_name: Optional[str] = None,
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        files = [f for f in manuscripts if f and f[1]]
        if not files:
            raise HTTPException(status_code=400, detail="At least one manuscript file is required")

        author_id = str(author["id"])
        submitter = author_name or author.get("full_name") or author.get("email") or "Author"
        paper_key = str(uuid4())

        stored_files = [self._store(paper_key, f) for f in files]
        stored_cover = self._store(paper_key, cover_letter) if cover_letter and cover_letter[1] else None

        enriched = self._enrich_co_authors(
            _parse_list(co_authors),
            paper_title=title,
            submitter_name=submitter,
            background_tasks=background_tasks,
        )

        manuscript_id = self.next_manuscript_id()
        now = self._now()
        payload = {
            "id": paper_key,
            "manuscript_id": manuscript_id,
            "title": title,
            "abstract": abstract,
            "author_id": author_id,
            "author_name": submitter,
            "department": department,
            "journal_id": journal_id or None,
            "journal_name": journal_name,
            "type": paper_type or "Research Article",
            "keywords": _parse_list(keywords),
            "co_authors": enriched,
            "file_url": stored_files[0]["url"],
            "original_file_name": stored_files[0]["original_name"],
            "files": stored_files,
            "cover_letter_url": (stored_cover or {}).get("url"),
            "cover_letter_name": (stored_cover or {}).get("original_name"),
            "version": 1,
            "status": PaperStatus.SUBMITTED.value,
            "previous_versions": [],
            "editor_id": None,
            "decision": None,
            "submitted_at": now,
            "updated_at": now,
        }
        resp = self.client.table("manuscripts").insert(payload).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Failed to submit paper")
        paper = rows[0]

        self.notifications.notify_user(
            user_id=author_id,
            title="Submission Received",
            message=(
                f'Your paper titled "{title}" has been successfully submitted and is pending editorial review. '
                f"Manuscript ID: {manuscript_id}"
            ),
            type="info",
            related_id=paper.get("id"),
            background_tasks=background_tasks,
        )
        self.notifications.notify_all_editors(
            title="New Paper Submission",
            message=f'A new paper titled "{title}" has been submitted by {submitter}.',
            type="info",
            related_id=paper.get("id"),
            background_tasks=background_tasks,
        )
        return {
            "message": "Paper submitted successfully",
            "paper_id": paper.get("id"),
            "manuscript_id": manuscript_id,
        }

    # --- 查询 ---

    def list_manuscripts(
        self,
        *,
        author_id: Optional[str] = None,
        status: Optional[str] = None,
        journal_id: Optional[str] = None,
        editor_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        q = self.client.table("manuscripts").select("*")
        if author_id:
            q = q.eq("author_id", author_id)
        if status:
            q = q.eq("status", normalize_paper_status(status) or status)
        if journal_id:
            # 支持逗号分隔的多个期刊
            ids = [j.strip() for j in journal_id.split(",") if j.strip()]
            q = q.in_("journal_id", ids) if len(ids) > 1 else q.eq("journal_id", ids[0] if ids else journal_id)
        if editor_id:
            q = q.eq("editor_id", editor_id)
        resp = q.order("submitted_at", desc=True).execute()
        return getattr(resp, "data", None) or []

    def get_manuscript(self, manuscript_id: str) -> Dict[str, Any]:
        return self.workflow.get_manuscript(manuscript_id)

    # --- 编辑操作 ---

    def assign_editor(
        self,
        *,
        manuscript_id: str,
        editor_id: str,
        changed_by: Optional[str],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        paper = self.workflow.get_manuscript(manuscript_id)
        resp = (
            self.client.table("user_profiles")
            .select("id,email,full_name")
            .eq("id", editor_id)
            .limit(1)
            .execute()
        )
        editors = getattr(resp, "data", None) or []
        if not editors:
            raise HTTPException(status_code=404, detail="Editor not found")
        editor = editors[0]

        self.workflow.transition_manuscript(
            manuscript_id=manuscript_id,
            to_status=PaperStatus.UNDER_REVIEW.value,
            changed_by=changed_by,
            comment="associate editor assigned",
            extra_updates={"editor_id": editor_id, "editor_name": editor.get("full_name")},
            current=paper,
        )
        self.notifications.notify_user(
            user_id=editor_id,
            title="New Editorial Assignment",
            message=(
                f'You have been assigned as the Associate Editor for the paper "{paper.get("title") or "Unknown Title"}". '
                "Please review the submission in your queue."
            ),
            type="info",
            related_id=manuscript_id,
            background_tasks=background_tasks,
        )
        return {"message": "Associate Editor assigned successfully"}

    def desk_reject(
        self,
        *,
        manuscript_id: str,
        reason: Optional[str],
        changed_by: Optional[str],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        paper = self.workflow.get_manuscript(manuscript_id)
        self.workflow.transition_manuscript(
            manuscript_id=manuscript_id,
            to_status=PaperStatus.DESK_REJECTED.value,
            changed_by=changed_by,
            comment=reason,
            extra_updates={
                "decision": "desk_reject",
                "decision_reason": reason,
                "decision_date": self._now(),
            },
            current=paper,
        )
        self.notifications.notify_paper_authors(
            paper,
            title="Paper Desk Rejected",
            message="Your paper has been desk rejected. Please check feedback.",
            type="error",
            related_id=manuscript_id,
            background_tasks=background_tasks,
        )
        return {"message": "Paper has been desk rejected"}

    def record_decision(
        self,
        *,
        manuscript_id: str,
        decision: str,
        comments: Optional[str],
        changed_by: Optional[str],
        allow_skip: bool = False,
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        target = DECISION_TARGET_STATUS.get(decision)
        if target is None:
            raise HTTPException(status_code=400, detail="Invalid decision")

        paper = self.workflow.get_manuscript(manuscript_id)
        updated = self.workflow.transition_manuscript(
            manuscript_id=manuscript_id,
            to_status=target,
            changed_by=changed_by,
            comment=comments or DECISION_LABELS.get(decision),
            allow_skip=allow_skip,
            extra_updates={
                "decision": decision,
                "decision_comments": comments,
                "decision_date": self._now(),
            },
            current=paper,
        )

        title, message, notif_type = decision_notification(decision)
        self.notifications.notify_paper_authors(
            paper,
            title=title,
            message=message,
            type=notif_type,
            related_id=manuscript_id,
            background_tasks=background_tasks,
        )
        return {"message": "Decision recorded successfully", "status": updated.get("status", target)}

    # --- 作者修回 ---

    def submit_revision(
        self,
        *,
        manuscript_id: str,
        author: Dict[str, Any],
        manuscript: Optional[UploadedFile],
        response_to_reviewers: Optional[UploadedFile] = None,
        allow_other_author: bool = False,
    ) -> Dict[str, Any]:
        if not manuscript or not manuscript[1]:
            raise HTTPException(status_code=400, detail="Revised manuscript file is required")

        paper = self.workflow.get_manuscript(manuscript_id)
        if not allow_other_author and str(paper.get("author_id")) != str(author.get("id")):
            raise HTTPException(status_code=403, detail="Only the submitting author can upload a revision")

        current = normalize_paper_status(paper.get("status"))
        is_final = current in FINAL_SUBMISSION_SOURCES
        target = PaperStatus.FINAL_SUBMITTED.value if is_final else PaperStatus.REVISION_SUBMITTED.value
        if target not in PaperStatus.allowed_next(current):
            raise HTTPException(status_code=400, detail=f"Invalid transition: {current} -> {target}")

        stored = self._store(manuscript_id, manuscript)
        stored_response = (
            self._store(manuscript_id, response_to_reviewers)
            if response_to_reviewers and response_to_reviewers[1]
            else None
        )

        version = int(paper.get("version") or 1)
        archived = {
            "version": version,
            "file_url": paper.get("file_url"),
            "submitted_at": paper.get("submitted_at"),
            "decision": paper.get("decision"),
            "decision_reason": paper.get("decision_reason"),
            "decision_comments": paper.get("decision_comments"),
        }
        previous_versions = list(paper.get("previous_versions") or []) + [archived]

        self.workflow.transition_manuscript(
            manuscript_id=manuscript_id,
            to_status=target,
            changed_by=str(author.get("id")),
            comment=f"version {version + 1} uploaded",
            extra_updates={
                "version": version + 1,
                "previous_versions": previous_versions,
                "file_url": stored["url"],
                "original_file_name": stored["original_name"],
                "response_to_reviewers_url": (stored_response or {}).get("url"),
                "decision": "final_submitted" if is_final else None,
                "decision_reason": None,
                "submitted_at": self._now(),
            },
            current=paper,
        )
        return {"message": "Revision submitted successfully", "version": version + 1, "status": target}

    # --- 审稿人管理 ---

    def reassign_reviewers(
        self,
        *,
        manuscript_id: str,
        changed_by: Optional[str],
        due_date: Optional[str] = None,
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        paper = self.workflow.get_manuscript(manuscript_id)
        resp = (
            self.client.table("reviews")
            .select("reviewer_id,reviewer_name,status")
            .eq("paper_id", manuscript_id)
            .order("assigned_at", desc=False)
            .execute()
        )
        previous: Dict[str, Optional[str]] = {}
        for r in getattr(resp, "data", None) or []:
            # 拒绝过邀请的审稿人不再重邀
            if r.get("status") == "declined" or not r.get("reviewer_id"):
                continue
            previous.setdefault(str(r["reviewer_id"]), r.get("reviewer_name"))
        if not previous:
            raise HTTPException(status_code=400, detail="No previous reviewers to re-assign")

        self.workflow.transition_manuscript(
            manuscript_id=manuscript_id,
            to_status=PaperStatus.UNDER_REVIEW.value,
            changed_by=changed_by,
            comment="reviewers re-assigned for revised version",
            extra_updates={"decision": None},
            current=paper,
        )

        due = due_date or (
            datetime.now(timezone.utc) + timedelta(days=self.config.review_due_days)
        ).isoformat()
        version = int(paper.get("version") or 1)
        try:
            rows = [
                {
                    "paper_id": manuscript_id,
                    "reviewer_id": reviewer_id,
                    "reviewer_name": name or "Reviewer",
                    "status": "invited",
                    "assigned_at": self._now(),
                    "due_date": due,
                    "version": version,
                    "scores": dict(ZERO_SCORES),
                    "recommendation": None,
                }
                for reviewer_id, name in previous.items()
            ]
            self.client.table("reviews").insert(rows).execute()
        except Exception as e:
            logger.error("[Manuscripts] re-assign reviewers failed: %s", e)
            self.workflow.restore_manuscript_status(
                manuscript_id=manuscript_id,
                expected_status=PaperStatus.UNDER_REVIEW.value,
                previous=paper,
                changed_by=changed_by,
                reason="reassign-reviewers failed",
                fields=("decision",),
            )
            raise HTTPException(status_code=500, detail="Failed to re-assign reviewers") from e

        self.notifications.notify_users(
            list(previous.keys()),
            title="Review Re-assignment",
            message=f"You have been re-assigned to review a revised version of: {paper.get('title')}",
            type="info",
            related_id=manuscript_id,
            background_tasks=background_tasks,
        )
        return {"message": f"Re-assigned {len(previous)} reviewers", "count": len(previous)}

    def remove_reviewer(self, *, manuscript_id: str, reviewer_id: str) -> Dict[str, Any]:
        self.workflow.get_manuscript(manuscript_id)
        resp = (
            self.client.table("reviews")
            .delete()
            .eq("paper_id", manuscript_id)
            .eq("reviewer_id", reviewer_id)
            .execute()
        )
        if not (getattr(resp, "data", None) or []):
            raise HTTPException(status_code=404, detail="Reviewer is not assigned to this paper")
        return {"message": "Reviewer removed successfully"}

    # --- 出版 ---

    def assign_issue(
        self,
        *,
        manuscript_id: str,
        issue_id: str,
        changed_by: Optional[str],
        allow_skip: bool = False,
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        if not (issue_id or "").strip():
            raise HTTPException(status_code=400, detail="Issue ID is required")
        resp = self.client.table("issues").select("id,volume_id").eq("id", issue_id).limit(1).execute()
        issues = getattr(resp, "data", None) or []
        if not issues:
            raise HTTPException(status_code=404, detail="Issue not found")

        paper = self.workflow.get_manuscript(manuscript_id)
        self.workflow.transition_manuscript(
            manuscript_id=manuscript_id,
            to_status=PaperStatus.PUBLISHED.value,
            changed_by=changed_by,
            comment=f"assigned to issue {issue_id}",
            allow_skip=allow_skip,
            extra_updates={
                "issue_id": issue_id,
                "volume_id": issues[0].get("volume_id"),
                "published_at": self._now(),
            },
            current=paper,
        )
        self.notifications.notify_paper_authors(
            paper,
            title="Paper Published",
            message="Congratulations! Your paper has been assigned to an issue and is now officially published.",
            type="success",
            related_id=manuscript_id,
            background_tasks=background_tasks,
        )
        return {"message": "Paper assigned to issue and published"}
