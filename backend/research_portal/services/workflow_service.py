from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import HTTPException

from research_portal.lib.api_client import supabase_admin
from research_portal.models.paper import PaperStatus, normalize_paper_status
from research_portal.models.project import ProjectStatus, normalize_project_status

logger = logging.getLogger("research_portal.workflow")


@dataclass(frozen=True)
class StatusTransition:
    entity_type: str
    entity_id: str
    from_status: str
    to_status: str
    changed_by: str | None
    comment: str | None
    created_at: str


class WorkflowService:
    """
    统一的状态机写入服务（研究项目 + 期刊稿件）。

    中文注释:
    - 所有状态写入都先查 allowed_next，再以 compare-and-set 方式落库：
      UPDATE ... WHERE id = ? AND status = <读到的旧值>。
      0 行命中说明并发请求已改过状态，返回 409，由前端刷新后重试。
    - 每次流转写一条 status_transition_logs；审计写入失败只记日志。
    - admin 可 allow_skip 跳过状态机校验，但仍走 CAS 与审计。
    """

    def __init__(self) -> None:
        self.client = supabase_admin

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _insert_transition_log(self, log: StatusTransition) -> None:
        try:
            self.client.table("status_transition_logs").insert(
                {
                    "entity_type": log.entity_type,
                    "entity_id": log.entity_id,
                    "from_status": log.from_status,
                    "to_status": log.to_status,
                    "comment": log.comment,
                    "changed_by": log.changed_by,
                    "created_at": log.created_at,
                }
            ).execute()
        except Exception as e:
            logger.warning("[Workflow] transition log insert failed (ignored): %s", e)

    def _fetch(self, table: str, entity_id: str, not_found: str) -> dict[str, Any]:
        try:
            resp = self.client.table(table).select("*").eq("id", entity_id).limit(1).execute()
        except Exception as e:
            logger.error("[Workflow] load %s %s failed: %s", table, entity_id, e)
            raise HTTPException(status_code=500, detail=f"Failed to load {table}") from e
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail=not_found)
        return rows[0]

    def _compare_and_set(
        self,
        *,
        table: str,
        entity_id: str,
        expected_raw: Any,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            upd = (
                self.client.table(table)
                .update(payload)
                .eq("id", entity_id)
                .eq("status", expected_raw)
                .execute()
            )
        except Exception as e:
            logger.error("[Workflow] status update on %s %s failed: %s", table, entity_id, e)
            raise HTTPException(status_code=500, detail="Failed to update status") from e
        rows = getattr(upd, "data", None) or []
        if not rows:
            raise HTTPException(
                status_code=409,
                detail="Status was changed by another request. Please reload and try again.",
            )
        return rows[0]

    # --- 研究项目 ---

    def get_project(self, project_id: str) -> dict[str, Any]:
        return self._fetch("projects", project_id, "Project not found")

    def transition_project(
        self,
        *,
        project_id: str,
        to_status: int,
        changed_by: str | None,
        comment: str | None = None,
        allow_skip: bool = False,
        extra_updates: dict[str, Any] | None = None,
        current: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        研究项目状态流转。current 为调用方已读到的项目行（省一次查询）。
        """
        project = current if current is not None else self.get_project(project_id)
        raw_from = project.get("status")

        to_norm = normalize_project_status(to_status)
        if to_norm is None:
            raise HTTPException(status_code=422, detail="Invalid status")
        from_norm = normalize_project_status(raw_from)

        if not allow_skip:
            allowed = ProjectStatus.allowed_next(from_norm)
            if to_norm.value not in allowed:
                from_label = from_norm.name if from_norm is not None else str(raw_from)
                allowed_labels = sorted(ProjectStatus(v).name for v in allowed)
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid transition: {from_label} -> {to_norm.name}. Allowed: {allowed_labels}",
                )

        now = self._now()
        payload: dict[str, Any] = {"status": to_norm.value, "updated_at": now}
        if extra_updates:
            payload.update(extra_updates)
        updated = self._compare_and_set(
            table="projects", entity_id=project_id, expected_raw=raw_from, payload=payload
        )

        self._insert_transition_log(
            StatusTransition(
                entity_type="project",
                entity_id=str(project_id),
                from_status=str(from_norm.value if from_norm is not None else raw_from),
                to_status=str(to_norm.value),
                changed_by=changed_by,
                comment=comment,
                created_at=now,
            )
        )
        return updated

    def _restore(
        self,
        *,
        table: str,
        entity_type: str,
        entity_id: str,
        expected_status: Any,
        restore_to: Any,
        changed_by: str | None,
        reason: str,
        restore_fields: dict[str, Any] | None = None,
    ) -> bool:
        """
        补偿：后续写入失败时把状态改回去（同样 CAS，失败只记日志）。
        """
        payload: dict[str, Any] = {"status": restore_to, "updated_at": self._now()}
        if restore_fields:
            payload.update(restore_fields)
        try:
            self._compare_and_set(
                table=table,
                entity_id=entity_id,
                expected_raw=expected_status,
                payload=payload,
            )
        except HTTPException as e:
            logger.error(
                "[Workflow] rollback of %s %s to %s failed: %s", entity_type, entity_id, restore_to, e.detail
            )
            return False
        self._insert_transition_log(
            StatusTransition(
                entity_type=entity_type,
                entity_id=str(entity_id),
                from_status=str(expected_status),
                to_status=str(restore_to),
                changed_by=changed_by,
                comment=f"rollback: {reason}",
                created_at=self._now(),
            )
        )
        return True

    def restore_project_status(
        self,
        *,
        project_id: str,
        expected_status: int,
        restore_to: Any,
        changed_by: str | None,
        reason: str,
    ) -> bool:
        return self._restore(
            table="projects",
            entity_type="project",
            entity_id=project_id,
            expected_status=expected_status,
            restore_to=restore_to,
            changed_by=changed_by,
            reason=reason,
        )

    # --- 期刊稿件 ---

    def get_manuscript(self, manuscript_id: str) -> dict[str, Any]:
        return self._fetch("manuscripts", manuscript_id, "Paper not found")

    def transition_manuscript(
        self,
        *,
        manuscript_id: str,
        to_status: str,
        changed_by: str | None,
        comment: str | None = None,
        allow_skip: bool = False,
        extra_updates: dict[str, Any] | None = None,
        current: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        ms = current if current is not None else self.get_manuscript(manuscript_id)
        raw_from = ms.get("status")

        to_norm = normalize_paper_status(to_status)
        if to_norm is None:
            raise HTTPException(status_code=422, detail="Invalid status")
        from_norm: Optional[str] = normalize_paper_status(raw_from) or PaperStatus.SUBMITTED.value

        if not allow_skip:
            allowed = PaperStatus.allowed_next(from_norm)
            if to_norm not in allowed:
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid transition: {from_norm} -> {to_norm}. Allowed: {sorted(allowed)}",
                )

        now = self._now()
        payload: dict[str, Any] = {"status": to_norm, "updated_at": now}
        if extra_updates:
            payload.update(extra_updates)
        updated = self._compare_and_set(
            table="manuscripts", entity_id=manuscript_id, expected_raw=raw_from, payload=payload
        )

        self._insert_transition_log(
            StatusTransition(
                entity_type="manuscript",
                entity_id=str(manuscript_id),
                from_status=str(from_norm),
                to_status=to_norm,
                changed_by=changed_by,
                comment=comment,
                created_at=now,
            )
        )
        return updated

    def restore_manuscript_status(
        self,
        *,
        manuscript_id: str,
        expected_status: str,
        previous: dict[str, Any],
        changed_by: str | None,
        reason: str,
        fields: tuple[str, ...] = (),
    ) -> bool:
        """
        previous 为流转前的稿件行；fields 为需要一并恢复的列（如 decision）。
        """
        return self._restore(
            table="manuscripts",
            entity_type="manuscript",
            entity_id=manuscript_id,
            expected_status=expected_status,
            restore_to=previous.get("status"),
            changed_by=changed_by,
            reason=reason,
            restore_fields={f: previous.get(f) for f in fields},
        )
