from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from postgrest.exceptions import APIError

from research_portal.lib.api_client import supabase_admin
from research_portal.models.paper import PaperStatus
from research_portal.models.schemas import IssueCreate, VolumeCreate

logger = logging.getLogger("research_portal.publishing")


class PublishingService:
    """
    卷（volumes）/ 期（issues）管理。

    中文注释:
    - 同一期刊下年份唯一：先查后插，并兜底处理数据库唯一约束冲突（23505）。
    """

    def __init__(self) -> None:
        self.client = supabase_admin

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def list_volumes(self, *, journal_id: Optional[str] = None) -> List[Dict[str, Any]]:
        q = self.client.table("volumes").select("*")
        if journal_id:
            q = q.eq("journal_id", journal_id)
        resp = q.order("year", desc=True).execute()
        return getattr(resp, "data", None) or []

    def create_volume(self, body: VolumeCreate) -> Dict[str, Any]:
        existing = (
            self.client.table("volumes")
            .select("id")
            .eq("journal_id", body.journal_id)
            .eq("year", body.year)
            .limit(1)
            .execute()
        )
        if getattr(existing, "data", None):
            raise HTTPException(status_code=409, detail="Volume for this year already exists")

        payload = {
            "journal_id": body.journal_id,
            "year": body.year,
            "title": body.title or f"Volume {body.year}",
            "created_at": self._now(),
        }
        try:
            resp = self.client.table("volumes").insert(payload).execute()
        except APIError as e:
            text = f"{getattr(e, 'code', '')} {e}".lower()
            if "23505" in text or "duplicate" in text:
                raise HTTPException(status_code=409, detail="Volume for this year already exists") from e
            logger.error("[Publishing] create volume failed: %s", e)
            raise HTTPException(status_code=500, detail="Failed to create volume") from e
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Failed to create volume")
        return rows[0]

    def list_issues(self, volume_id: str) -> List[Dict[str, Any]]:
        resp = (
            self.client.table("issues")
            .select("*")
            .eq("volume_id", volume_id)
            .order("issue_number", desc=False)
            .execute()
        )
        return getattr(resp, "data", None) or []

    def create_issue(self, body: IssueCreate) -> Dict[str, Any]:
        volume = self.client.table("volumes").select("id").eq("id", body.volume_id).limit(1).execute()
        if not getattr(volume, "data", None):
            raise HTTPException(status_code=404, detail="Volume not found")

        payload = {
            "volume_id": body.volume_id,
            "title": body.title,
            "issue_number": body.issue_number,
            "description": body.description,
            "status": "draft",
            "created_at": self._now(),
        }
        resp = self.client.table("issues").insert(payload).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Failed to create issue")
        return rows[0]

    def publish_issue(self, issue_id: str) -> Dict[str, Any]:
        resp = (
            self.client.table("issues")
            .update({"status": "published", "published_at": self._now()})
            .eq("id", issue_id)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="Issue not found")
        return rows[0]

    def list_issue_papers(self, issue_id: str) -> List[Dict[str, Any]]:
        resp = (
            self.client.table("manuscripts")
            .select("*")
            .eq("issue_id", issue_id)
            .eq("status", PaperStatus.PUBLISHED.value)
            .execute()
        )
        return getattr(resp, "data", None) or []
