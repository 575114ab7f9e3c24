from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from fastapi import HTTPException

from research_portal.lib.api_client import supabase_admin
from research_portal.models.paper import PaperStatus
from research_portal.models.schemas import JournalCreate

logger = logging.getLogger("research_portal.journals")

# 首页展示的稿件状态
HOME_VISIBLE_STATUSES = (
    PaperStatus.PUBLISHED.value,
    PaperStatus.FINAL_SUBMITTED.value,
    PaperStatus.ACCEPTED.value,
)
EXCLUDED_FROM_COUNTS = (PaperStatus.REJECTED.value, PaperStatus.DESK_REJECTED.value)
BOARD_SIZE = 5


def _journal_ids(entries: Iterable[Any] | None) -> set[str]:
    """
    user_profiles.editor_journals / reviewer_journals 兼容两种格式：["id", ...] 或 [{"id": ...}, ...]
    """
    out: set[str] = set()
    for e in entries or []:
        if isinstance(e, dict):
            if e.get("id"):
                out.add(str(e["id"]))
        elif e:
            out.add(str(e))
    return out


def _person(u: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": u.get("id"), "name": u.get("full_name"), "photo_url": u.get("photo_url"), "roles": u.get("roles") or []}


class JournalService:
    """
    期刊、目录与首页聚合数据。
    """

    def __init__(self) -> None:
        self.client = supabase_admin

    def list_journals(self) -> List[Dict[str, Any]]:
        resp = self.client.table("journals").select("*").order("name", desc=False).execute()
        return getattr(resp, "data", None) or []

    def get_journal(self, journal_id: str) -> Dict[str, Any]:
        resp = self.client.table("journals").select("*").eq("id", journal_id).limit(1).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=404, detail="Journal not found")
        return rows[0]

    def create_journal(self, body: JournalCreate) -> Dict[str, Any]:
        eic_name = None
        eic = None
        if body.editor_in_chief_id:
            resp = (
                self.client.table("user_profiles")
                .select("id,full_name,roles")
                .eq("id", body.editor_in_chief_id)
                .limit(1)
                .execute()
            )
            rows = getattr(resp, "data", None) or []
            if not rows:
                raise HTTPException(status_code=404, detail="Editor-in-chief not found")
            eic = rows[0]
            eic_name = eic.get("full_name")

        payload = {
            "name": body.name.strip(),
            "description": body.description,
            "issn": body.issn,
            "cover_image_url": body.cover_image_url,
            "editor_in_chief_id": body.editor_in_chief_id,
            "editor_in_chief_name": eic_name,
            "status": "active",
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        resp = self.client.table("journals").insert(payload).execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Failed to create journal")
        journal = rows[0]

        # 主编若还没有 editor 角色，自动补齐
        if eic is not None:
            roles = list(eic.get("roles") or [])
            if "editor" not in roles:
                self.client.table("user_profiles").update({"roles": [*roles, "editor"]}).eq("id", eic["id"]).execute()
        return journal

    def _all_profiles(self) -> List[Dict[str, Any]]:
        resp = (
            self.client.table("user_profiles")
            .select("id,full_name,photo_url,roles,department,editor_journals,reviewer_journals")
            .execute()
        )
        return getattr(resp, "data", None) or []

    def journal_people(self, journal_id: str) -> Dict[str, Any]:
        self.get_journal(journal_id)
        profiles = self._all_profiles()
        by_id = {str(u.get("id")): u for u in profiles}

        editors = [_person(u) for u in profiles if journal_id in _journal_ids(u.get("editor_journals"))]
        reviewers = [_person(u) for u in profiles if journal_id in _journal_ids(u.get("reviewer_journals"))]

        resp = (
            self.client.table("manuscripts")
            .select("author_id,author_name,status")
            .eq("journal_id", journal_id)
            .execute()
        )
        authors: Dict[str, Dict[str, Any]] = {}
        for p in getattr(resp, "data", None) or []:
            if p.get("status") in EXCLUDED_FROM_COUNTS or not p.get("author_id"):
                continue
            aid = str(p["author_id"])
            if aid in authors:
                continue
            user = by_id.get(aid)
            # 作者账号已删除时回退到稿件上的署名
            authors[aid] = (
                {"id": aid, "name": user.get("full_name"), "photo_url": user.get("photo_url")}
                if user
                else {"id": aid, "name": p.get("author_name")}
            )
        return {"editors": editors, "reviewers": reviewers, "authors": list(authors.values())}

    def home_data(self) -> List[Dict[str, Any]]:
        journals = self.list_journals()
        resp = (
            self.client.table("manuscripts")
            .select("*")
            .in_("status", list(HOME_VISIBLE_STATUSES))
            .execute()
        )
        papers = getattr(resp, "data", None) or []
        profiles = self._all_profiles()

        out: List[Dict[str, Any]] = []
        for journal in journals:
            jid = str(journal.get("id"))
            journal_papers = [p for p in papers if str(p.get("journal_id")) == jid]

            most_viewed = max(journal_papers, key=lambda p: int(p.get("views") or 0), default=None)
            latest = max(journal_papers, key=lambda p: str(p.get("submitted_at") or ""), default=None)

            editors = [
                {"name": u.get("full_name"), "photo_url": u.get("photo_url")}
                for u in profiles
                if jid in _journal_ids(u.get("editor_journals"))
            ][:BOARD_SIZE]
            reviewers = [
                {"name": u.get("full_name"), "photo_url": u.get("photo_url")}
                for u in profiles
                if jid in _journal_ids(u.get("reviewer_journals"))
            ][:BOARD_SIZE]
            counts = Counter(p.get("author_name") or "Unknown" for p in journal_papers)
            top_authors = [{"name": name, "papers": n} for name, n in counts.most_common(BOARD_SIZE)]

            out.append(
                {
                    **journal,
                    "stats": {"most_viewed": most_viewed, "latest": latest},
                    "boards": {"editors": editors, "reviewers": reviewers, "top_authors": top_authors},
                }
            )
        return out

    def list_departments(self) -> List[Dict[str, Any]]:
        resp = self.client.table("departments").select("*").order("name", desc=False).execute()
        return getattr(resp, "data", None) or []

    def stats(self) -> Dict[str, int]:
        papers = (
            self.client.table("manuscripts")
            .select("id", count="exact")
            .neq("status", PaperStatus.REJECTED.value)
            .execute()
        )
        users = self.client.table("user_profiles").select("id", count="exact").execute()
        journals = self.client.table("journals").select("id", count="exact").execute()

        def _count(resp: Any) -> int:
            count = getattr(resp, "count", None)
            return int(count) if count is not None else len(getattr(resp, "data", None) or [])

        return {"papers": _count(papers), "researchers": _count(users), "journals": _count(journals)}
