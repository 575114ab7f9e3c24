"""
角色与权限依赖。

中文注释:
- 角色保存在 user_profiles.roles（text[]），一个用户可以同时拥有多个角色。
- 路由层用 require_any_role(...) 声明所需角色，满足任意一个即可。
"""

import logging
import os
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from fastapi import Depends, HTTPException

from research_portal.core.auth_utils import get_current_user
from research_portal.lib.api_client import supabase

logger = logging.getLogger("research_portal.roles")

ALLOWED_USER_ROLES = frozenset({"author", "reviewer", "editor", "publisher", "research_officer", "admin"})

EDITORIAL_ROLES = ("admin", "editor")
PUBLISHING_ROLES = ("admin", "editor", "publisher")
PROJECT_STAFF_ROLES = ("admin", "research_officer")

DEFAULT_ROLES = ("author",)
# ADMIN_EMAILS 中的账号登录时自动补齐这些角色（本地/演示环境用）
BOOTSTRAP_ADMIN_ROLES = ("admin", "editor", "research_officer", "author")


def admin_emails() -> FrozenSet[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return frozenset(e.strip().lower() for e in raw.split(",") if e.strip())


def _granted_roles(email: Optional[str]) -> list[str]:
    if email and email.strip().lower() in admin_emails():
        return list(BOOTSTRAP_ADMIN_ROLES)
    return list(DEFAULT_ROLES)


def _sync_profile(user_id: str, email: Optional[str]) -> Dict[str, Any]:
    granted = _granted_roles(email)
    table = supabase.table("user_profiles")

    rows = table.select("*").eq("id", user_id).execute().data or []
    if not rows:
        # 首次登录：建档，默认只有 author
        created = table.insert({"id": user_id, "email": email, "roles": granted, "status": "active"}).execute()
        return (created.data or [{"id": user_id, "email": email, "roles": granted}])[0]

    profile = rows[0]
    current = list(profile.get("roles") or [])
    if set(granted) - set(current) - set(DEFAULT_ROLES):
        merged = list(dict.fromkeys([*granted, *current]))
        table.update({"roles": merged}).eq("id", user_id).execute()
        profile["roles"] = merged
    return profile


async def get_current_profile(current_user: dict = Depends(get_current_user)) -> dict:
    """
    当前登录用户的 profile（含 roles），不存在时自动创建。
    """
    user_id = current_user["id"]
    email = current_user.get("email")
    try:
        return _sync_profile(user_id, email)
    except Exception as e:
        # 中文注释: profile 表不可用时仍返回身份信息，只授予默认角色
        logger.error("[Roles] failed to load profile for %s: %s", user_id, e)
        return {"id": user_id, "email": email, "roles": _granted_roles(email)}


def require_any_role(required: Iterable[str]) -> Callable[..., Any]:
    allowed = frozenset(required)

    async def _dep(profile: dict = Depends(get_current_profile)) -> dict:
        if allowed.isdisjoint(profile.get("roles") or []):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return profile

    return _dep


def is_admin(profile: dict) -> bool:
    return "admin" in (profile.get("roles") or [])
