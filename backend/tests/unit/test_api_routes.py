from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from research_portal.api.v1 import auth as auth_api
from research_portal.api.v1 import journals as journals_api
from research_portal.api.v1 import manuscripts as manuscripts_api
from research_portal.api.v1 import notifications as notifications_api
from research_portal.api.v1 import projects as projects_api
from research_portal.api.v1 import users as users_api
from main import app
from utils.api_client import API_PREFIX, auth_headers, override_service


@pytest.mark.asyncio
async def test_root_is_public(client):
    resp = await client.get("/")
    assert resp.status_code == 200
    assert "running" in resp.json()["message"]


@pytest.mark.asyncio
async def test_protected_route_without_token(client):
    resp = await client.get(f"{API_PREFIX}/notifications")
    assert resp.status_code in (401, 403)
    assert "error" in resp.json()


@pytest.mark.asyncio
async def test_author_cannot_list_projects(client, as_role):
    as_role("author")
    service = MagicMock()
    override_service(app, projects_api.get_project_service, service)

    resp = await client.get(f"{API_PREFIX}/papers")

    assert resp.status_code == 403
    assert resp.json() == {"error": "Insufficient role"}
    service.list_projects.assert_not_called()


@pytest.mark.asyncio
async def test_project_report_as_csv(client, as_role, auth_token):
    as_role("research_officer")
    service = MagicMock()
    service.list_projects.return_value = [{"id": "p1", "title": "Soil"}]
    service.report_to_csv.return_value = "id,title\np1,Soil\n"
    override_service(app, projects_api.get_project_service, service)

    resp = await client.get(f"{API_PREFIX}/papers/download-report?format=csv", headers=auth_headers(auth_token))

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]
    assert resp.text.startswith("id,title")


@pytest.mark.asyncio
async def test_missing_body_field_is_400_with_field_names(client, as_role):
    as_role("research_officer")
    override_service(app, projects_api.get_project_service, MagicMock())

    resp = await client.post(f"{API_PREFIX}/papers/p1/assign-reviewer", json={"reviewer_id": "r1"})

    assert resp.status_code == 400
    body = resp.json()
    assert "due_date" in body["fields"]
    assert body["error"].startswith("Missing or invalid fields")


@pytest.mark.asyncio
async def test_service_http_errors_keep_status_and_message(client, as_role):
    as_role("research_officer")
    service = MagicMock()
    service.decide_proposal.side_effect = HTTPException(status_code=409, detail="Project status changed concurrently")
    override_service(app, projects_api.get_project_service, service)

    resp = await client.post(f"{API_PREFIX}/papers/p1/decide-proposal", json={"decision": "accept"})

    assert resp.status_code == 409
    assert resp.json() == {"error": "Project status changed concurrently"}


@pytest.mark.asyncio
async def test_manuscript_submission_limits_file_count(client, as_role):
    as_role("author")
    service = MagicMock()
    override_service(app, manuscripts_api.get_manuscript_service, service)

    files = [("manuscript", (f"part{i}.pdf", b"%PDF-1.4", "application/pdf")) for i in range(11)]
    resp = await client.post(f"{API_PREFIX}/manuscripts", data={"title": "Too many"}, files=files)

    assert resp.status_code == 400
    service.submit_manuscript.assert_not_called()


@pytest.mark.asyncio
async def test_manuscript_submission_passes_files_to_service(client, as_role):
    profile = as_role("author", user_id="u-author")
    service = MagicMock()
    service.submit_manuscript.return_value = {"id": "m1", "status": "submitted"}
    override_service(app, manuscripts_api.get_manuscript_service, service)

    resp = await client.post(
        f"{API_PREFIX}/manuscripts",
        data={"title": "Dots", "keywords": '["quantum"]'},
        files=[("manuscript", ("paper.pdf", b"%PDF-1.4", "application/pdf"))],
    )

    assert resp.status_code == 201
    kwargs = service.submit_manuscript.call_args.kwargs
    assert kwargs["author"] == profile
    assert kwargs["manuscripts"] == [("paper.pdf", b"%PDF-1.4", "application/pdf")]
    assert kwargs["cover_letter"] is None


@pytest.mark.asyncio
async def test_mark_read_requires_ids(client, as_role):
    as_role("author")
    override_service(app, notifications_api.get_notification_service, MagicMock())

    resp = await client.put(f"{API_PREFIX}/notifications/mark-read", json={"ids": []})

    assert resp.status_code == 400
    assert resp.json()["fields"] == ["ids"]


@pytest.mark.asyncio
async def test_unknown_notification_is_404(client, as_role):
    as_role("author", user_id="me")
    service = MagicMock()
    service.mark_one_read.return_value = None
    override_service(app, notifications_api.get_notification_service, service)

    resp = await client.put(f"{API_PREFIX}/notifications/n1/read")

    assert resp.status_code == 404
    service.mark_one_read.assert_called_once_with(user_id="me", notification_id="n1")


@pytest.mark.asyncio
async def test_users_cannot_edit_other_profiles(client, as_role):
    as_role("author", user_id="me")
    service = MagicMock()
    override_service(app, users_api.get_user_service, service)

    resp = await client.put(f"{API_PREFIX}/users/someone-else/favorites", json={"paper_id": "m1"})

    assert resp.status_code == 403
    service.toggle_favorite.assert_not_called()


@pytest.mark.asyncio
async def test_admin_updates_roles(client, as_role):
    as_role("admin")
    service = MagicMock()
    service.update_roles.return_value = {"id": "u1", "roles": ["reviewer"]}
    override_service(app, users_api.get_user_service, service)

    resp = await client.put(f"{API_PREFIX}/users/u1/roles", json={"roles": ["reviewer"]})

    assert resp.status_code == 200
    assert resp.json()["roles"] == ["reviewer"]
    assert service.update_roles.call_args.args == ("u1", ["reviewer"])


@pytest.mark.asyncio
async def test_accept_invite_is_public(client):
    service = MagicMock()
    service.accept_invite.return_value = {"message": "Account activated", "email": "nina@uni.edu"}
    override_service(app, auth_api.get_user_service, service)

    resp = await client.post(
        f"{API_PREFIX}/auth/accept-invite", json={"token": "signed", "password": "long-enough"}
    )

    assert resp.status_code == 200
    service.accept_invite.assert_called_once_with(token="signed", password="long-enough", full_name=None)


@pytest.mark.asyncio
async def test_accept_invite_rejects_short_password(client):
    override_service(app, auth_api.get_user_service, MagicMock())
    resp = await client.post(f"{API_PREFIX}/auth/accept-invite", json={"token": "signed", "password": "short"})
    assert resp.status_code == 400
    assert resp.json()["fields"] == ["password"]


@pytest.mark.asyncio
async def test_public_stats(client):
    service = MagicMock()
    service.stats.return_value = {"papers": 4, "researchers": 9, "journals": 2}
    override_service(app, journals_api.get_journal_service, service)

    resp = await client.get(f"{API_PREFIX}/stats")

    assert resp.status_code == 200
    assert resp.json() == {"papers": 4, "researchers": 9, "journals": 2}


@pytest.mark.asyncio
async def test_only_admin_creates_journals(client, as_role):
    as_role("editor")
    override_service(app, journals_api.get_journal_service, MagicMock())
    resp = await client.post(f"{API_PREFIX}/journals", json={"name": "J", "editor_in_chief_id": "u1"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_jwt_is_decoded_locally(auth_token, expired_token):
    from fastapi.security import HTTPAuthorizationCredentials

    from research_portal.core.auth_utils import get_current_user

    user = await get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=auth_token))
    assert user == {"id": "00000000-0000-0000-0000-000000000000", "email": "test@example.com"}

    with pytest.raises(HTTPException) as exc:
        await get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=expired_token))
    assert exc.value.status_code == 401
