import json
from datetime import datetime, timezone

import pytest
from fastapi import HTTPException

import research_portal.services.manuscript_service as manuscript_service_module
from research_portal.services.manuscript_service import ManuscriptService
from utils.fake_supabase import FakeSupabase, bind

AUTHOR = {"id": "u-author", "email": "author@uni.edu", "full_name": "Ada Author", "roles": ["author"]}


def _seed(**extra):
    tables = {
        "user_profiles": [
            {"id": "u-author", "email": "author@uni.edu", "full_name": "Ada Author", "roles": ["author"]},
            {"id": "u-co", "email": "co@uni.edu", "full_name": "Cody Coauthor", "roles": ["author"]},
            {"id": "u-ed1", "email": "ed1@uni.edu", "full_name": "Eve Editor", "roles": ["editor"]},
            {"id": "u-ed2", "email": "ed2@uni.edu", "full_name": "Ed Second", "roles": ["admin", "editor"]},
            {"id": "u-rev1", "email": "rev1@uni.edu", "full_name": "Rev One", "roles": ["reviewer"]},
            {"id": "u-rev2", "email": "rev2@uni.edu", "full_name": "Rev Two", "roles": ["reviewer"]},
        ],
        "manuscripts": [
            {
                "id": "m1",
                "title": "Graph Coloring",
                "author_id": "u-author",
                "status": "submitted",
                "version": 1,
                "file_url": "https://storage.test/manuscripts/v1.pdf",
                "submitted_at": "2026-01-01T00:00:00+00:00",
                "co_authors": [{"name": "Cody", "user_id": "u-co", "is_registered": True}],
                "previous_versions": [],
                "journal_id": "j1",
            }
        ],
    }
    tables.update(extra)
    return FakeSupabase(tables)


def _paper(db):
    return db.rows("manuscripts")[0]


@pytest.fixture
def uploads(monkeypatch):
    saved = []

    def _upload(*, bucket, path, content, content_type, upsert=True):
        saved.append((bucket, path))
        return f"https://storage.test/{bucket}/{path}"

    monkeypatch.setattr(manuscript_service_module, "upload_bytes", _upload)
    return saved


def _service(db):
    svc = ManuscriptService()
    mailer = bind(svc, db)
    return svc, mailer


def _notified(db, user_id):
    return [n for n in db.rows("notifications") if n["user_id"] == user_id]


# --- 投稿 ---


def test_submit_requires_a_manuscript_file(uploads):
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.submit_manuscript(author=AUTHOR, title="X", abstract=None, manuscripts=[("a.pdf", b"", "application/pdf")])
    assert exc.value.status_code == 400
    assert uploads == []


def test_submit_assigns_display_id_links_coauthors_and_notifies(uploads):
    db = _seed()
    svc, mailer = _service(db)

    out = svc.submit_manuscript(
        author=AUTHOR,
        title="Sparse Matrices",
        abstract="About sparse things",
        manuscripts=[("paper v1.pdf", b"%PDF", "application/pdf"), ("appendix.pdf", b"%PDF", "application/pdf")],
        cover_letter=("cover.docx", b"doc", "application/msword"),
        keywords=json.dumps(["linear algebra", "graphs"]),
        co_authors=json.dumps(
            [{"name": "Cody", "email": "CO@uni.edu"}, {"name": "Stranger", "email": "stranger@else.org"}]
        ),
        journal_id="j1",
    )

    year = datetime.now(timezone.utc).year
    # 已有 1 篇稿件，新编号为 002
    assert out["manuscript_id"] == f"JRP-{year}-002"
    paper = next(p for p in db.rows("manuscripts") if p["id"] == out["paper_id"])
    assert paper["status"] == "submitted"
    assert paper["version"] == 1
    assert paper["keywords"] == ["linear algebra", "graphs"]
    assert len(paper["files"]) == 2
    assert paper["cover_letter_name"] == "cover.docx"
    co = {c["name"]: c for c in paper["co_authors"]}
    assert co["Cody"]["is_registered"] is True
    assert co["Cody"]["user_id"] == "u-co"
    assert co["Stranger"]["is_registered"] is False
    assert len(uploads) == 3

    invite_calls = [c for c in mailer.send_email_background.call_args_list if c.args[2] == "coauthor_invitation.html"]
    assert [c.args[0] for c in invite_calls] == ["stranger@else.org"]

    assert _notified(db, "u-author")[0]["title"] == "Submission Received"
    assert _notified(db, "u-ed1")[0]["title"] == "New Paper Submission"
    assert _notified(db, "u-ed2")[0]["title"] == "New Paper Submission"


def test_invalid_json_list_fields_become_empty(uploads):
    db = _seed()
    svc, _ = _service(db)
    out = svc.submit_manuscript(
        author=AUTHOR,
        title="T",
        abstract=None,
        manuscripts=[("a.pdf", b"1", "application/pdf")],
        keywords="not json",
        co_authors="{oops",
    )
    paper = next(p for p in db.rows("manuscripts") if p["id"] == out["paper_id"])
    assert paper["keywords"] == []
    assert paper["co_authors"] == []


# --- 查询 ---


def test_list_filters_by_comma_separated_journals():
    db = _seed()
    db.tables["manuscripts"] += [
        {"id": "m2", "journal_id": "j2", "status": "submitted", "submitted_at": "2026-02-01"},
        {"id": "m3", "journal_id": "j3", "status": "submitted", "submitted_at": "2026-03-01"},
    ]
    svc, _ = _service(db)

    rows = svc.list_manuscripts(journal_id="j1, j3")
    assert [r["id"] for r in rows] == ["m3", "m1"]
    assert [r["id"] for r in svc.list_manuscripts(journal_id="j2")] == ["m2"]


def test_get_manuscript_404():
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.get_manuscript("nope")
    assert exc.value.status_code == 404
    assert exc.value.detail == "Paper not found"


# --- 编辑操作 ---


def test_assign_editor_sets_editor_and_moves_to_under_review():
    db = _seed()
    svc, _ = _service(db)

    svc.assign_editor(manuscript_id="m1", editor_id="u-ed1", changed_by="u-ed2")

    paper = _paper(db)
    assert paper["status"] == "under_review"
    assert paper["editor_id"] == "u-ed1"
    assert paper["editor_name"] == "Eve Editor"
    assert _notified(db, "u-ed1")[0]["title"] == "New Editorial Assignment"


def test_assign_unknown_editor_is_404():
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.assign_editor(manuscript_id="m1", editor_id="ghost", changed_by="x")
    assert exc.value.status_code == 404


def test_desk_reject_notifies_author_and_registered_coauthor():
    db = _seed()
    svc, _ = _service(db)

    svc.desk_reject(manuscript_id="m1", reason="Out of scope", changed_by="u-ed1")

    paper = _paper(db)
    assert paper["status"] == "desk_rejected"
    assert paper["decision_reason"] == "Out of scope"
    assert len(_notified(db, "u-author")) == 1
    assert len(_notified(db, "u-co")) == 1


def test_decision_on_illegal_path_is_400():
    db = _seed()
    _paper(db)["status"] = "published"
    svc, _ = _service(db)
    with pytest.raises(HTTPException) as exc:
        svc.record_decision(manuscript_id="m1", decision="accept", comments=None, changed_by="e")
    assert exc.value.status_code == 400


def test_minor_revision_decision_moves_to_revision_required():
    db = _seed()
    _paper(db)["status"] = "under_review"
    svc, _ = _service(db)

    out = svc.record_decision(manuscript_id="m1", decision="minor_revision", comments="Fix typos", changed_by="e")

    assert out["status"] == "revision_required"
    paper = _paper(db)
    assert paper["decision"] == "minor_revision"
    assert paper["decision_comments"] == "Fix typos"
    note = _notified(db, "u-author")[0]
    assert note["type"] == "warning"
    assert note["title"] == "Decision: Minor Revision"


def test_unknown_decision_is_400():
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.record_decision(manuscript_id="m1", decision="shrug", comments=None, changed_by="e")
    assert exc.value.status_code == 400


# --- 修回 ---


def test_revision_requires_file():
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.submit_revision(manuscript_id="m1", author=AUTHOR, manuscript=None)
    assert exc.value.status_code == 400


def test_revision_by_other_user_is_403(uploads):
    db = _seed()
    _paper(db)["status"] = "revision_required"
    svc, _ = _service(db)
    with pytest.raises(HTTPException) as exc:
        svc.submit_revision(
            manuscript_id="m1", author={"id": "u-co"}, manuscript=("v2.pdf", b"2", "application/pdf")
        )
    assert exc.value.status_code == 403


def test_revision_archives_previous_version(uploads):
    db = _seed()
    paper = _paper(db)
    paper.update({"status": "revision_required", "decision": "major_revision"})
    svc, _ = _service(db)

    out = svc.submit_revision(
        manuscript_id="m1",
        author=AUTHOR,
        manuscript=("v2.pdf", b"2", "application/pdf"),
        response_to_reviewers=("response.pdf", b"r", "application/pdf"),
    )

    assert out == {"message": "Revision submitted successfully", "version": 2, "status": "revision_submitted"}
    paper = _paper(db)
    assert paper["version"] == 2
    assert paper["previous_versions"][0]["version"] == 1
    assert paper["previous_versions"][0]["file_url"] == "https://storage.test/manuscripts/v1.pdf"
    assert paper["previous_versions"][0]["decision"] == "major_revision"
    assert paper["response_to_reviewers_url"].endswith("_response.pdf")
    assert paper["decision"] is None


def test_revision_after_final_request_is_final_submission(uploads):
    db = _seed()
    _paper(db)["status"] = "final_submission_requested"
    svc, _ = _service(db)

    out = svc.submit_revision(manuscript_id="m1", author=AUTHOR, manuscript=("final.pdf", b"f", "application/pdf"))

    assert out["status"] == "final_submitted"
    assert _paper(db)["decision"] == "final_submitted"


# --- 重新分配审稿人 ---


def test_reassign_reviewers_requires_previous_reviewers():
    db = _seed(reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev1", "status": "declined"}])
    _paper(db)["status"] = "revision_submitted"
    svc, _ = _service(db)
    with pytest.raises(HTTPException) as exc:
        svc.reassign_reviewers(manuscript_id="m1", changed_by="e")
    assert exc.value.status_code == 400


def test_reassign_reviewers_reinvites_distinct_non_declined_reviewers():
    db = _seed(
        reviews=[
            {"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev1", "reviewer_name": "Rev One", "status": "completed", "assigned_at": "1"},
            {"id": "r2", "paper_id": "m1", "reviewer_id": "u-rev1", "reviewer_name": "Rev One", "status": "completed", "assigned_at": "2"},
            {"id": "r3", "paper_id": "m1", "reviewer_id": "u-rev2", "reviewer_name": "Rev Two", "status": "declined", "assigned_at": "3"},
        ]
    )
    paper = _paper(db)
    paper.update({"status": "revision_submitted", "version": 2, "decision": "minor_revision"})
    svc, _ = _service(db)

    out = svc.reassign_reviewers(manuscript_id="m1", changed_by="e")

    assert out["count"] == 1
    new = [r for r in db.rows("reviews") if r["status"] == "invited"]
    assert len(new) == 1
    assert new[0]["reviewer_id"] == "u-rev1"
    assert new[0]["version"] == 2
    due = datetime.fromisoformat(new[0]["due_date"])
    assert (due - datetime.now(timezone.utc)).days in (13, 14)
    paper = _paper(db)
    assert paper["status"] == "under_review"
    assert paper["decision"] is None
    assert len(_notified(db, "u-rev1")) == 1
    assert _notified(db, "u-rev2") == []


def test_reassign_reviewers_rolls_back_when_insert_fails():
    db = _seed(reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev1", "status": "completed"}])
    _paper(db).update({"status": "revision_submitted", "decision": "minor_revision"})
    db.fail("reviews", "insert")
    svc, _ = _service(db)

    with pytest.raises(HTTPException) as exc:
        svc.reassign_reviewers(manuscript_id="m1", changed_by="e")

    assert exc.value.status_code == 500
    paper = _paper(db)
    assert paper["status"] == "revision_submitted"
    assert paper["decision"] == "minor_revision"


def test_remove_reviewer_404_when_not_assigned():
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.remove_reviewer(manuscript_id="m1", reviewer_id="u-rev1")
    assert exc.value.status_code == 404


# --- 出版 ---


def test_assign_issue_requires_existing_issue():
    svc, _ = _service(_seed())
    with pytest.raises(HTTPException) as exc:
        svc.assign_issue(manuscript_id="m1", issue_id=" ", changed_by="p")
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        svc.assign_issue(manuscript_id="m1", issue_id="missing", changed_by="p")
    assert exc.value.status_code == 404


def test_assign_issue_publishes_ready_paper():
    db = _seed(issues=[{"id": "i1", "volume_id": "v1"}])
    _paper(db)["status"] = "ready_for_publication"
    svc, _ = _service(db)

    svc.assign_issue(manuscript_id="m1", issue_id="i1", changed_by="p")

    paper = _paper(db)
    assert paper["status"] == "published"
    assert paper["issue_id"] == "i1"
    assert paper["volume_id"] == "v1"
    assert paper["published_at"]
    assert _notified(db, "u-author")[0]["title"] == "Paper Published"


def test_assign_issue_from_under_review_needs_admin_skip():
    db = _seed(issues=[{"id": "i1", "volume_id": "v1"}])
    _paper(db)["status"] = "under_review"
    svc, _ = _service(db)

    with pytest.raises(HTTPException) as exc:
        svc.assign_issue(manuscript_id="m1", issue_id="i1", changed_by="p")
    assert exc.value.status_code == 400

    svc.assign_issue(manuscript_id="m1", issue_id="i1", changed_by="admin", allow_skip=True)
    assert _paper(db)["status"] == "published"
