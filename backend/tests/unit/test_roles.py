import pytest
from fastapi import HTTPException

import research_portal.core.roles as roles_module
from research_portal.core.roles import get_current_profile, require_any_role
from utils.fake_supabase import FakeSupabase


@pytest.mark.asyncio
async def test_first_login_creates_author_profile(monkeypatch):
    db = FakeSupabase()
    monkeypatch.setattr(roles_module, "supabase", db)
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)

    profile = await get_current_profile({"id": "u1", "email": "new@uni.edu"})

    assert profile["roles"] == ["author"]
    assert db.rows("user_profiles")[0]["status"] == "active"


@pytest.mark.asyncio
async def test_admin_emails_are_promoted(monkeypatch):
    db = FakeSupabase({"user_profiles": [{"id": "u1", "email": "Boss@uni.edu", "roles": ["reviewer"]}]})
    monkeypatch.setattr(roles_module, "supabase", db)
    monkeypatch.setenv("ADMIN_EMAILS", "boss@uni.edu, other@uni.edu")

    profile = await get_current_profile({"id": "u1", "email": "Boss@uni.edu"})

    assert profile["roles"][0] == "admin"
    assert "reviewer" in profile["roles"]
    assert db.rows("user_profiles")[0]["roles"] == profile["roles"]


@pytest.mark.asyncio
async def test_profile_store_outage_falls_back_to_default_roles(monkeypatch):
    db = FakeSupabase()
    db.fail("user_profiles", "insert")
    monkeypatch.setattr(roles_module, "supabase", db)
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)

    profile = await get_current_profile({"id": "u1", "email": "x@uni.edu"})

    assert profile == {"id": "u1", "email": "x@uni.edu", "roles": ["author"]}


@pytest.mark.asyncio
async def test_require_any_role():
    dep = require_any_role(["admin", "editor"])
    editor = {"id": "e", "roles": ["editor"]}
    assert await dep(profile=editor) is editor
    with pytest.raises(HTTPException) as exc:
        await dep(profile={"id": "a", "roles": ["author"]})
    assert exc.value.status_code == 403
