from __future__ import annotations

import csv
import io
import json
import logging
import secrets
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import BackgroundTasks, HTTPException

from research_portal.core.config import PortalConfig
from research_portal.core.mail import email_service
from research_portal.lib.api_client import create_anon_supabase_client, supabase_admin
from research_portal.models.project import (
    ProjectStatus,
    ReviewType,
    normalize_project_status,
    normalize_review_type,
    researcher_notification_for,
)
from research_portal.models.schemas import AssignReviewerRequest, ManualReviewRequest
from research_portal.services.notification_service import NotificationService
from research_portal.services.storage_service import (
    file_extension,
    safe_filename,
    timestamp_prefix,
    upload_bytes,
)
from research_portal.services.workflow_service import WorkflowService

logger = logging.getLogger("research_portal.projects")

# 删除项目时先清理的子表（顺序即删除顺序）
PROJECT_CHILD_TABLES = ("project_reviews", "project_reports", "reviewer_payments", "researcher_payments")

PROPOSAL_PENDING_STATUSES = (ProjectStatus.SUBMITTED, ProjectStatus.UNDER_REVIEW)

REPORT_CSV_COLUMNS = [
    "id",
    "code_no",
    "title",
    "status",
    "status_label",
    "submission_date",
    "fiscal_year",
    "researcher_name",
    "faculty",
    "department",
    "proposed_budget",
    "allocated_budget",
    "total_budget_received",
    "proposal_reviewer_name",
    "final_report_reviewer_name",
]


def _is_unique_violation(e: Exception) -> bool:
    code = str(getattr(e, "code", "") or "")
    text = str(e).lower()
    return code == "23505" or "23505" in text or "duplicate key" in text


def _parse_json_field(value: Any, default: Any = None) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class ProjectService:
    """
    研究项目（proposal -> review -> final report）业务服务。

    中文注释:
    - 状态写入统一走 WorkflowService（状态机 + CAS + 审计）。
    - 多步写入（manual-review / reassign-reviewer）先做受保护的状态写，
      后续写入失败时调用 restore_project_status 回滚状态。
    - 邮件/站内通知是旁路，失败不影响接口结果。
    """

    def __init__(self) -> None:
        self.client = supabase_admin
        self.workflow = WorkflowService()
        self.notifications = NotificationService()
        self.email = email_service
        self.config = PortalConfig.from_env()

    # --- 通用查询 ---

    def _select_in(self, table: str, column: str, values: Iterable[Any], columns: str = "*") -> List[Dict[str, Any]]:
        ids = [v for v in dict.fromkeys(values) if v is not None]
        if not ids:
            return []
        resp = self.client.table(table).select(columns).in_(column, ids).execute()
        return getattr(resp, "data", None) or []

    def _first(self, table: str, **filters: Any) -> Optional[Dict[str, Any]]:
        q = self.client.table(table).select("*")
        for col, val in filters.items():
            q = q.eq(col, val)
        resp = q.limit(1).execute()
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def _contact_for(self, table: str, row_id: Any) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """
        reviewers / researchers 行 -> (user_id, email, full_name)
        """
        if row_id is None:
            return None, None, None
        try:
            row = self._first(table, id=row_id)
            user_id = (row or {}).get("user_id")
            if not user_id:
                return None, None, None
            profile = self._first("user_profiles", id=user_id) or {}
            return str(user_id), profile.get("email"), profile.get("full_name")
        except Exception as e:
            logger.warning("[Projects] contact lookup %s %s failed: %s", table, row_id, e)
            return None, None, None

    def _notify_researcher(
        self,
        project: Dict[str, Any],
        email_type: str,
        background_tasks: BackgroundTasks | None,
    ) -> None:
        user_id, email, name = self._contact_for("researchers", project.get("researcher_id"))
        title = str(project.get("title") or "")
        self.notifications.send_project_email(
            to_email=email,
            email_type=email_type,
            project_title=title,
            name=name,
            background_tasks=background_tasks,
        )
        if user_id:
            is_good = email_type in {"PROPOSAL_ACCEPTED", "REPORT_ACCEPTED"}
            self.notifications.create_notification(
                user_id=user_id,
                title=email_type.replace("_", " ").title(),
                message=f'Update on your project "{title}".',
                type="success" if is_good else "warning",
                related_id=str(project.get("id")),
            )

    def _notify_reviewer_assigned(
        self,
        project: Dict[str, Any],
        reviewer_id: Any,
        background_tasks: BackgroundTasks | None,
    ) -> None:
        user_id, email, name = self._contact_for("reviewers", reviewer_id)
        title = str(project.get("title") or "")
        self.notifications.send_project_email(
            to_email=email,
            email_type="REVIEWER_ASSIGNED",
            project_title=title,
            name=name,
            background_tasks=background_tasks,
        )
        if user_id:
            self.notifications.create_notification(
                user_id=user_id,
                title="New Review Assignment",
                message=f'You have been assigned to review "{title}".',
                type="info",
                related_id=str(project.get("id")),
            )

    # --- 创建 ---

    def create_project(
        self,
        *,
        title: Optional[str],
        researcher_id: Optional[str],
        fiscal_year_id: Optional[str],
        proposed_budget: Optional[str],
        code_no: Optional[str] = None,
        circular_id: Optional[str] = None,
        abstract: Optional[str] = None,
        problem_domain: Optional[str] = None,
        documents: Optional[List[Tuple[str, bytes, str]]] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        documents: [(filename, content, content_type), ...]
        """
        title = (title or "").strip()
        if not title or not researcher_id or not fiscal_year_id or not str(proposed_budget or "").strip():
            raise HTTPException(status_code=400, detail="Missing required fields")

        # 空编号存 NULL，允许多个项目暂不编号
        code = (code_no or "").strip() or None
        if code and self._first("projects", code_no=code):
            raise HTTPException(status_code=409, detail="Project Code already exists.")

        today = date.today().isoformat()
        payload = {
            "code_no": code,
            "title": title,
            "researcher_id": researcher_id,
            "fiscal_year_id": fiscal_year_id,
            "circular_id": circular_id or None,
            "abstract": abstract,
            "problem_domain": problem_domain,
            "proposed_budget": proposed_budget,
            "status": ProjectStatus.SUBMITTED.value,
            "proposal_submission_date": today,
        }
        try:
            resp = self.client.table("projects").insert(payload).execute()
        except Exception as e:
            if code and _is_unique_violation(e):
                raise HTTPException(status_code=409, detail="Project Code already exists.") from e
            logger.error("[Projects] create failed: %s", e)
            raise HTTPException(status_code=500, detail="Error creating project") from e
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Error creating project")
        project_id = rows[0]["id"]

        saved_docs: List[Dict[str, Any]] = []
        safe_title = safe_filename(title[:30]).lower()
        index = 1
        for filename, content, content_type in documents or []:
            if not content:
                continue
            stored = f"proposal_{project_id}_{safe_title}_{today}_{index}.{file_extension(filename)}"
            index += 1
            url = upload_bytes(
                bucket=self.config.project_bucket,
                path=f"projects/{stored}",
                content=content,
                content_type=content_type or "application/octet-stream",
            )
            saved_docs.append({"name": filename, "filename": stored, "url": url})

        if saved_docs:
            self.client.table("project_reports").insert(
                {
                    "project_id": project_id,
                    "type": "proposal",
                    "status": 1,
                    "documents": saved_docs,
                    "uploaded_by": created_by,
                    "uploaded_at": datetime.now(timezone.utc).isoformat(),
                }
            ).execute()

        return {"success": True, "message": "Project created successfully", "project_id": project_id}

    # --- 列表 / 报表 ---

    def list_projects(self) -> List[Dict[str, Any]]:
        resp = self.client.table("projects").select("*").order("created_at", desc=True).execute()
        projects = getattr(resp, "data", None) or []
        return self._enrich_for_listing(projects)

    def _enrich_for_listing(self, projects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not projects:
            return []
        project_ids = [p.get("id") for p in projects]

        fiscal_years = {
            r["id"]: r.get("year_label")
            for r in self._select_in("fiscal_years", "id", (p.get("fiscal_year_id") for p in projects))
        }
        researchers = {
            r["id"]: r for r in self._select_in("researchers", "id", (p.get("researcher_id") for p in projects))
        }
        faculties = {
            r["id"]: r.get("name")
            for r in self._select_in("faculties", "id", (r.get("faculty_id") for r in researchers.values()))
        }
        departments = {
            r["id"]: r.get("name")
            for r in self._select_in("departments", "id", (r.get("department_id") for r in researchers.values()))
        }

        reviews = self._select_in("project_reviews", "project_id", project_ids)
        reviewers = {
            r["id"]: r for r in self._select_in("reviewers", "id", (rv.get("reviewer_id") for rv in reviews))
        }
        user_ids = [r.get("user_id") for r in researchers.values()] + [r.get("user_id") for r in reviewers.values()]
        names = {
            u["id"]: u.get("full_name") for u in self._select_in("user_profiles", "id", user_ids, "id,full_name")
        }

        reviewer_names: Dict[Tuple[Any, int], Optional[str]] = {}
        for rv in reviews:
            key = (rv.get("project_id"), int(normalize_review_type(rv.get("review_type"))))
            reviewer = reviewers.get(rv.get("reviewer_id")) or {}
            reviewer_names[key] = names.get(reviewer.get("user_id"))

        received: Dict[Any, float] = defaultdict(float)
        for pay in self._select_in("researcher_payments", "project_id", project_ids):
            try:
                received[pay.get("project_id")] += float(pay.get("amount") or 0)
            except (TypeError, ValueError):
                continue

        out: List[Dict[str, Any]] = []
        for p in projects:
            researcher = researchers.get(p.get("researcher_id")) or {}
            status = normalize_project_status(p.get("status"))
            out.append(
                {
                    "id": p.get("id"),
                    "code_no": p.get("code_no"),
                    "title": p.get("title"),
                    "status": p.get("status"),
                    "status_label": status.label if status is not None else None,
                    "submission_date": p.get("proposal_submission_date"),
                    "proposed_budget": p.get("proposed_budget"),
                    "allocated_budget": p.get("allocated_budget"),
                    "total_budget_received": received.get(p.get("id"), 0),
                    "fiscal_year": fiscal_years.get(p.get("fiscal_year_id")),
                    "researcher_id": p.get("researcher_id"),
                    "researcher_name": names.get(researcher.get("user_id")),
                    "faculty": faculties.get(researcher.get("faculty_id")),
                    "department": departments.get(researcher.get("department_id")),
                    "proposal_reviewer_name": reviewer_names.get((p.get("id"), int(ReviewType.PROPOSAL))),
                    "final_report_reviewer_name": reviewer_names.get((p.get("id"), int(ReviewType.FINAL_REPORT))),
                }
            )
        return out

    @staticmethod
    def report_to_csv(rows: List[Dict[str, Any]]) -> str:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=REPORT_CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if row.get(k) is None else row.get(k)) for k in REPORT_CSV_COLUMNS})
        return buf.getvalue()

    # --- 详情 ---

    def _latest(self, table: str, project_id: str, order_col: str, **filters: Any) -> Optional[Dict[str, Any]]:
        q = self.client.table(table).select("*").eq("project_id", project_id)
        for col, val in filters.items():
            q = q.eq(col, val)
        resp = q.order(order_col, desc=True).limit(1).execute()
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def _review_with_reviewer(self, review: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not review:
            return None
        out = dict(review)
        out["review_id"] = review.get("id")
        out["marks_breakdown"] = _parse_json_field(review.get("marks_breakdown"))
        reviewer = self._first("reviewers", id=review.get("reviewer_id")) if review.get("reviewer_id") else None
        profile = self._first("user_profiles", id=reviewer.get("user_id")) if reviewer and reviewer.get("user_id") else None
        out["reviewer_name"] = (profile or {}).get("full_name")
        out["reviewer_email"] = (profile or {}).get("email")
        out["reviewer_designation"] = (reviewer or {}).get("designation")
        out["reviewer_university"] = (reviewer or {}).get("university")
        return out

    def get_project_detail(self, project_id: str) -> Dict[str, Any]:
        project = self._first("projects", id=project_id)
        if not project:
            raise HTTPException(status_code=404, detail="Project not found")

        core = dict(project)
        core["submission_date"] = project.get("proposal_submission_date")
        # 历史数据里 problem_domain 可能是非法 JSON，解析失败按 null 返回
        core["problem_domain"] = _parse_json_field(project.get("problem_domain"))

        fiscal_year = self._first("fiscal_years", id=project["fiscal_year_id"]) if project.get("fiscal_year_id") else None
        core["fiscal_year"] = (fiscal_year or {}).get("year_label")

        researcher = self._first("researchers", id=project["researcher_id"]) if project.get("researcher_id") else None
        if researcher:
            profile = self._first("user_profiles", id=researcher.get("user_id")) if researcher.get("user_id") else None
            department = self._first("departments", id=researcher["department_id"]) if researcher.get("department_id") else None
            faculty = self._first("faculties", id=researcher["faculty_id"]) if researcher.get("faculty_id") else None
            core.update(
                {
                    "researcher_name": (profile or {}).get("full_name"),
                    "researcher_email": (profile or {}).get("email"),
                    "researcher_phone": (profile or {}).get("phone"),
                    "researcher_designation": researcher.get("designation"),
                    "researcher_department": (department or {}).get("name"),
                    "researcher_faculty": (faculty or {}).get("name"),
                }
            )

        def _report(kind: str) -> Optional[Dict[str, Any]]:
            row = self._latest("project_reports", project_id, "uploaded_at", type=kind)
            if not row:
                return None
            return {**row, "documents": _parse_json_field(row.get("documents"), [])}

        return {
            "success": True,
            "project": core,
            "proposal": _report("proposal"),
            "final_report": _report("final_report"),
            "proposal_review": self._review_with_reviewer(
                self._latest("project_reviews", project_id, "created_at", review_type=int(ReviewType.PROPOSAL))
            ),
            "final_report_review": self._review_with_reviewer(
                self._latest("project_reviews", project_id, "created_at", review_type=int(ReviewType.FINAL_REPORT))
            ),
        }

    # --- 审稿人分配 ---

    def _invite_new_reviewer(
        self,
        body: AssignReviewerRequest,
        background_tasks: BackgroundTasks | None,
    ) -> str:
        """
        邀请外部审稿人：建 auth 账号（invited）+ user_profiles + reviewers，发送带签名 token 的邀请邮件。
        返回 reviewers.id
        """
        email = str(body.new_reviewer_email).strip().lower()
        existing = (
            self.client.table("user_profiles").select("id").eq("email", email).limit(1).execute()
        )
        if getattr(existing, "data", None):
            raise HTTPException(
                status_code=409,
                detail="User with this email already exists. Please select from list.",
            )

        try:
            created = self.client.auth.admin.create_user(
                {
                    "email": email,
                    # 随机临时密码，接受邀请时由本人重设
                    "password": secrets.token_urlsafe(24),
                    "email_confirm": True,
                    "user_metadata": {"full_name": body.new_reviewer_name},
                }
            )
            user_id = str(created.user.id)
        except Exception as e:
            logger.error("[Projects] create invited reviewer account failed: %s", e)
            raise HTTPException(status_code=500, detail="Failed to create reviewer account") from e

        self.client.table("user_profiles").upsert(
            {
                "id": user_id,
                "email": email,
                "full_name": body.new_reviewer_name,
                "roles": ["reviewer"],
                "status": "invited",
            }
        ).execute()
        reviewer_resp = (
            self.client.table("reviewers")
            .insert(
                {
                    "user_id": user_id,
                    "designation": body.new_reviewer_designation,
                    "university": body.new_reviewer_university,
                }
            )
            .execute()
        )
        reviewer_rows = getattr(reviewer_resp, "data", None) or []
        if not reviewer_rows:
            raise HTTPException(status_code=500, detail="Failed to create reviewer profile")

        token = self.email.create_token(email)
        context = {
            "name": body.new_reviewer_name,
            "role_label": "Reviewer",
            "token": token,
            "expires_days": max(1, self.config.invite_token_max_age // 86400),
        }
        logger.info("[Projects] sending invitation to new reviewer %s", email)
        if background_tasks is not None:
            background_tasks.add_task(
                self.email.send_email_background,
                email,
                "Invitation to review on the University Research Portal",
                "reviewer_invitation.html",
                context,
            )
        else:
            self.email.send_email_background(
                email,
                "Invitation to review on the University Research Portal",
                "reviewer_invitation.html",
                context,
            )
        return str(reviewer_rows[0]["id"])

    def _check_reviewer_request(self, body: AssignReviewerRequest) -> None:
        if body.is_invite:
            if not body.new_reviewer_name or not body.new_reviewer_email:
                raise HTTPException(status_code=400, detail="Name and Email required for invitation")
        elif not body.reviewer_id:
            raise HTTPException(status_code=400, detail="Reviewer ID is required")

    def _resolve_reviewer(
        self,
        body: AssignReviewerRequest,
        background_tasks: BackgroundTasks | None,
    ) -> Tuple[str, bool]:
        if body.is_invite:
            return self._invite_new_reviewer(body, background_tasks), True
        return str(body.reviewer_id), False

    def _resolve_after_transition(
        self,
        *,
        project_id: str,
        body: AssignReviewerRequest,
        moved: bool,
        raw_status: Any,
        changed_by: Optional[str],
        reason: str,
        background_tasks: BackgroundTasks | None,
    ) -> Tuple[str, bool]:
        """
        状态已推进后再解析/邀请审稿人；邀请失败时把状态改回去。
        """
        try:
            return self._resolve_reviewer(body, background_tasks)
        except Exception:
            if moved:
                self.workflow.restore_project_status(
                    project_id=project_id,
                    expected_status=ProjectStatus.UNDER_REVIEW.value,
                    restore_to=raw_status,
                    changed_by=changed_by,
                    reason=reason,
                )
            raise

    def _review_payload(
        self,
        project_id: str,
        reviewer_id: str,
        review_type: ReviewType,
        body: AssignReviewerRequest,
        changed_by: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "project_id": project_id,
            "reviewer_id": reviewer_id,
            "review_type": int(review_type),
            "assigned_by": body.assigned_by or changed_by,
            "due_date": body.due_date,
            "status": "assigned",
        }

    def assign_reviewer(
        self,
        *,
        project_id: str,
        body: AssignReviewerRequest,
        changed_by: Optional[str],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        self._check_reviewer_request(body)
        project = self.workflow.get_project(project_id)
        review_type = normalize_review_type(body.review_type)

        raw_status = project.get("status")
        moved = normalize_project_status(raw_status) == ProjectStatus.SUBMITTED
        if moved:
            self.workflow.transition_project(
                project_id=project_id,
                to_status=ProjectStatus.UNDER_REVIEW,
                changed_by=changed_by,
                comment="reviewer assigned",
                current=project,
            )

        reviewer_id, is_new_user = self._resolve_after_transition(
            project_id=project_id,
            body=body,
            moved=moved,
            raw_status=raw_status,
            changed_by=changed_by,
            reason="assign-reviewer failed",
            background_tasks=background_tasks,
        )

        try:
            self.client.table("project_reviews").insert(
                self._review_payload(project_id, reviewer_id, review_type, body, changed_by)
            ).execute()
        except Exception as e:
            logger.error("[Projects] insert review assignment failed: %s", e)
            if moved:
                self.workflow.restore_project_status(
                    project_id=project_id,
                    expected_status=ProjectStatus.UNDER_REVIEW.value,
                    restore_to=raw_status,
                    changed_by=changed_by,
                    reason="assign-reviewer failed",
                )
            raise HTTPException(status_code=500, detail="Failed to assign reviewer") from e

        # 新邀请的审稿人已收到邀请邮件，不再重复发分配邮件
        if not is_new_user:
            self._notify_reviewer_assigned(project, reviewer_id, background_tasks)

        return {
            "success": True,
            "message": "Reviewer invited and assigned successfully."
            if is_new_user
            else "Reviewer assigned successfully.",
            "reviewer_id": reviewer_id,
        }

    def _replace_assignment(
        self,
        *,
        project_id: str,
        reviewer_id: str,
        review_type: ReviewType,
        body: AssignReviewerRequest,
        changed_by: Optional[str],
    ) -> None:
        """
        先写新的审稿记录与待付款记录，再按 id 删除旧记录。

        中文注释:
        - 任一步失败：删掉本次新写的行，并把已删除的旧行原样写回，然后继续抛出。
        - 已付款（status != 0）的记录不参与替换。
        """
        payment_type = review_type.payment_type
        old_reviews = (
            self.client.table("project_reviews")
            .select("*")
            .eq("project_id", project_id)
            .eq("review_type", int(review_type))
            .execute()
        ).data or []
        old_payments = (
            self.client.table("reviewer_payments")
            .select("*")
            .eq("project_id", project_id)
            .eq("payment_type", payment_type)
            .eq("status", 0)
            .execute()
        ).data or []

        created: List[Tuple[str, Any]] = []
        removed: List[Tuple[str, List[Dict[str, Any]]]] = []
        try:
            resp = (
                self.client.table("project_reviews")
                .insert(self._review_payload(project_id, reviewer_id, review_type, body, changed_by))
                .execute()
            )
            created.extend(("project_reviews", row.get("id")) for row in (resp.data or []))
            resp = (
                self.client.table("reviewer_payments")
                .insert(
                    {
                        "reviewer_id": reviewer_id,
                        "project_id": project_id,
                        "payment_type": payment_type,
                        "status": 0,
                    }
                )
                .execute()
            )
            created.extend(("reviewer_payments", row.get("id")) for row in (resp.data or []))

            for table, rows in (("reviewer_payments", old_payments), ("project_reviews", old_reviews)):
                ids = [row["id"] for row in rows if row.get("id") is not None]
                if ids:
                    self.client.table(table).delete().in_("id", ids).execute()
                    removed.append((table, rows))
        except Exception:
            self._undo_replacement(created, removed)
            raise

    def _undo_replacement(
        self,
        created: List[Tuple[str, Any]],
        removed: List[Tuple[str, List[Dict[str, Any]]]],
    ) -> None:
        for table, row_id in created:
            try:
                self.client.table(table).delete().eq("id", row_id).execute()
            except Exception as e:
                logger.error("[Projects] failed to discard %s %s: %s", table, row_id, e)
        for table, rows in removed:
            try:
                self.client.table(table).insert(rows).execute()
            except Exception as e:
                logger.error("[Projects] failed to restore %d %s rows: %s", len(rows), table, e)

    def reassign_reviewer(
        self,
        *,
        project_id: str,
        body: AssignReviewerRequest,
        changed_by: Optional[str],
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        self._check_reviewer_request(body)
        project = self.workflow.get_project(project_id)
        review_type = normalize_review_type(body.review_type)

        raw_status = project.get("status")
        guarded = review_type == ReviewType.PROPOSAL
        if guarded:
            # proposal 改派后必须停留在 UNDER_REVIEW；非法来源在邀请审稿人之前就返回 400
            self.workflow.transition_project(
                project_id=project_id,
                to_status=ProjectStatus.UNDER_REVIEW,
                changed_by=changed_by,
                comment="reviewer reassigned",
                current=project,
            )

        reviewer_id, is_new_user = self._resolve_after_transition(
            project_id=project_id,
            body=body,
            moved=guarded,
            raw_status=raw_status,
            changed_by=changed_by,
            reason="reassign-reviewer failed",
            background_tasks=background_tasks,
        )

        try:
            self._replace_assignment(
                project_id=project_id,
                reviewer_id=reviewer_id,
                review_type=review_type,
                body=body,
                changed_by=changed_by,
            )
        except Exception as e:
            logger.error("[Projects] reassign reviewer failed: %s", e)
            if guarded:
                self.workflow.restore_project_status(
                    project_id=project_id,
                    expected_status=ProjectStatus.UNDER_REVIEW.value,
                    restore_to=raw_status,
                    changed_by=changed_by,
                    reason="reassign-reviewer failed",
                )
            raise HTTPException(status_code=500, detail="Failed to reassign reviewer") from e

        if not is_new_user:
            self._notify_reviewer_assigned(project, reviewer_id, background_tasks)

        return {
            "success": True,
            "message": "Reviewer invited and reassigned successfully."
            if is_new_user
            else "Reviewer reassigned successfully.",
            "reviewer_id": reviewer_id,
        }

    # --- 决策 / 审稿结果 ---

    def decide_proposal(
        self,
        *,
        project_id: str,
        decision: str,
        changed_by: Optional[str],
        comments: Optional[str] = None,
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        decision = (decision or "").strip().lower()
        if decision not in {"accept", "reject"}:
            raise HTTPException(status_code=400, detail="Invalid decision. Use 'accept' or 'reject'.")

        project = self.workflow.get_project(project_id)
        # 只有待决的 proposal 可以决策；final report 阶段走 manual-review / mark-complete
        current = normalize_project_status(project.get("status"))
        if current not in PROPOSAL_PENDING_STATUSES:
            label = current.name if current is not None else str(project.get("status"))
            raise HTTPException(status_code=400, detail=f"Proposal is not awaiting a decision (status: {label})")

        target = ProjectStatus.ONGOING if decision == "accept" else ProjectStatus.REJECTED
        self.workflow.transition_project(
            project_id=project_id,
            to_status=target,
            changed_by=changed_by,
            comment=comments or f"proposal {decision}ed",
            current=project,
        )

        email_type = "PROPOSAL_ACCEPTED" if decision == "accept" else "PROPOSAL_REJECTED"
        self._notify_researcher(project, email_type, background_tasks)

        return {
            "success": True,
            "message": f"Proposal {decision}ed successfully",
            "project_status": target.value,
        }

    def manual_review(
        self,
        *,
        project_id: str,
        body: ManualReviewRequest,
        changed_by: Optional[str],
        allow_skip: bool = False,
        background_tasks: BackgroundTasks | None = None,
    ) -> Dict[str, Any]:
        review_type = normalize_review_type(body.review_type)
        payment_type = review_type.payment_type
        target = normalize_project_status(body.status)
        if target is None:
            raise HTTPException(status_code=422, detail="Invalid status")

        project = self.workflow.get_project(project_id)
        raw_status = project.get("status")

        # 1) 受保护的状态写（失败直接 400/409，不产生任何副作用）
        self.workflow.transition_project(
            project_id=project_id,
            to_status=target,
            changed_by=changed_by,
            comment=f"manual {payment_type.replace('_', ' ')}",
            allow_skip=allow_skip,
            current=project,
        )

        now = datetime.now(timezone.utc).isoformat()
        review_fields = {
            "reviewer_id": body.reviewer_id,
            "total_marks": body.total_marks,
            "marks_breakdown": body.marks_breakdown,
            "review_comments": body.review_comments,
            "status": "submitted",
            "submitted_at": now,
            "assigned_by": changed_by,
        }
        try:
            # 2) 每个 (project, review_type) 只保留一条审稿记录
            existing = (
                self.client.table("project_reviews")
                .select("id")
                .eq("project_id", project_id)
                .eq("review_type", int(review_type))
                .limit(1)
                .execute()
            )
            existing_rows = getattr(existing, "data", None) or []
            if existing_rows:
                (
                    self.client.table("project_reviews")
                    .update(review_fields)
                    .eq("id", existing_rows[0]["id"])
                    .execute()
                )
            else:
                self.client.table("project_reviews").insert(
                    {"project_id": project_id, "review_type": int(review_type), **review_fields}
                ).execute()

            # 3) 审稿费：每个 (reviewer, project, payment_type) 仅一条
            payment = (
                self.client.table("reviewer_payments")
                .select("id")
                .eq("reviewer_id", body.reviewer_id)
                .eq("project_id", project_id)
                .eq("payment_type", payment_type)
                .limit(1)
                .execute()
            )
            if not (getattr(payment, "data", None) or []):
                self.client.table("reviewer_payments").insert(
                    {
                        "reviewer_id": body.reviewer_id,
                        "project_id": project_id,
                        "payment_type": payment_type,
                        "status": 0,
                    }
                ).execute()
        except Exception as e:
            logger.error("[Projects] manual review write failed: %s", e)
            self.workflow.restore_project_status(
                project_id=project_id,
                expected_status=target.value,
                restore_to=raw_status,
                changed_by=changed_by,
                reason="manual-review failed",
            )
            raise HTTPException(status_code=500, detail="Failed to submit manual review") from e

        email_type = researcher_notification_for(review_type, target.value)
        if email_type:
            self._notify_researcher(project, email_type, background_tasks)

        return {
            "success": True,
            "message": "Manual review processed successfully",
            "project_status": target.value,
            "notification": email_type,
        }

    # --- 终期报告 ---

    def submit_report(
        self,
        *,
        project_id: str,
        filename: Optional[str],
        content: Optional[bytes],
        content_type: Optional[str],
        uploaded_by: Optional[str],
        changed_by: Optional[str],
    ) -> Dict[str, Any]:
        if not content or not filename or not (uploaded_by or "").strip():
            raise HTTPException(status_code=400, detail="File and uploaded_by are required")

        project = self.workflow.get_project(project_id)
        raw_status = project.get("status")
        target = ProjectStatus.FINAL_REPORT_SUBMITTED
        allowed = ProjectStatus.allowed_next(raw_status)
        if target.value not in allowed:
            current = normalize_project_status(raw_status)
            raise HTTPException(
                status_code=400,
                detail=f"Invalid transition: {current.name if current is not None else raw_status} -> {target.name}",
            )

        stored = f"{timestamp_prefix()}_{safe_filename(filename)}"
        file_url = upload_bytes(
            bucket=self.config.project_bucket,
            path=f"reports/{stored}",
            content=content,
            content_type=content_type or "application/octet-stream",
        )

        self.workflow.transition_project(
            project_id=project_id,
            to_status=target,
            changed_by=changed_by,
            comment="final report submitted",
            current=project,
        )
        try:
            resp = (
                self.client.table("project_reports")
                .insert(
                    {
                        "project_id": project_id,
                        "status": 1,
                        "type": "final_report",
                        "name": stored,
                        "url": file_url,
                        "uploaded_by": uploaded_by,
                        "uploaded_at": datetime.now(timezone.utc).isoformat(),
                    }
                )
                .execute()
            )
            rows = getattr(resp, "data", None) or []
            if not rows:
                raise RuntimeError("insert returned no rows")
        except Exception as e:
            logger.error("[Projects] final report insert failed: %s", e)
            self.workflow.restore_project_status(
                project_id=project_id,
                expected_status=target.value,
                restore_to=raw_status,
                changed_by=changed_by,
                reason="submit-report failed",
            )
            raise HTTPException(status_code=500, detail="Failed to upload final report") from e

        return {
            "success": True,
            "report_id": rows[0].get("id"),
            "file_url": file_url,
            "new_status": target.value,
        }

    def mark_complete(self, *, project_id: str, changed_by: Optional[str], allow_skip: bool = False) -> Dict[str, Any]:
        self.workflow.transition_project(
            project_id=project_id,
            to_status=ProjectStatus.COMPLETED,
            changed_by=changed_by,
            comment="marked complete",
            allow_skip=allow_skip,
        )
        return {
            "success": True,
            "message": "Project marked as completed",
            "project_status": ProjectStatus.COMPLETED.value,
        }

    # --- 预算 / 基本信息 ---

    def set_budget(self, *, project_id: str, allocated_budget: Any) -> Dict[str, Any]:
        try:
            amount = float(allocated_budget)
        except (TypeError, ValueError):
            amount = 0.0
        if isinstance(allocated_budget, bool) or not amount > 0 or amount == float("inf"):
            raise HTTPException(status_code=400, detail="allocated_budget must be a positive number")

        resp = (
            self.client.table("projects")
            .update({"allocated_budget": amount, "updated_at": datetime.now(timezone.utc).isoformat()})
            .eq("id", project_id)
            .execute()
        )
        if not (getattr(resp, "data", None) or []):
            raise HTTPException(status_code=404, detail="Project not found")
        return {"success": True, "message": "Budget allocated successfully", "allocated_budget": amount}

    def update_details(self, *, project_id: str, title: str, code_no: Optional[str]) -> Dict[str, Any]:
        title = (title or "").strip()
        if not title:
            raise HTTPException(status_code=400, detail="Title is required")
        code = (code_no or "").strip() or None
        try:
            resp = (
                self.client.table("projects")
                .update({"title": title, "code_no": code, "updated_at": datetime.now(timezone.utc).isoformat()})
                .eq("id", project_id)
                .execute()
            )
        except Exception as e:
            if code and _is_unique_violation(e):
                raise HTTPException(status_code=409, detail="Project Code already exists.") from e
            logger.error("[Projects] update details failed: %s", e)
            raise HTTPException(status_code=500, detail="Failed to update project details") from e
        if not (getattr(resp, "data", None) or []):
            raise HTTPException(status_code=404, detail="Project not found")
        return {"success": True, "message": "Project details updated successfully"}

    # --- 删除 ---

    def _verify_password(self, email: str, password: str) -> bool:
        try:
            auth_client = create_anon_supabase_client()
            res = auth_client.auth.sign_in_with_password({"email": email, "password": password})
            return bool(getattr(res, "user", None))
        except Exception as e:
            logger.info("[Projects] password verification failed for %s: %s", email, e)
            return False

    def delete_project(self, *, project_id: str, password: str, current_user_id: str) -> Dict[str, Any]:
        if not password or not current_user_id:
            raise HTTPException(status_code=400, detail="Missing project ID, password, or user ID")

        user = self._first("user_profiles", id=current_user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        if not self._verify_password(str(user.get("email") or ""), password):
            raise HTTPException(status_code=403, detail="Incorrect password. Deletion denied.")

        # 先删子表，避免外键约束失败
        for table in PROJECT_CHILD_TABLES:
            self.client.table(table).delete().eq("project_id", project_id).execute()

        resp = self.client.table("projects").delete().eq("id", project_id).execute()
        if not (getattr(resp, "data", None) or []):
            raise HTTPException(status_code=404, detail="Project not found or already deleted")

        logger.info("[Projects] project %s deleted by %s", project_id, current_user_id)
        return {"success": True, "message": "Project and related data deleted successfully"}
