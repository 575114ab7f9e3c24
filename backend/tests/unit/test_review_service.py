import pytest
from fastapi import HTTPException

from research_portal.models.schemas import ReviewScores, ReviewSubmitRequest
from research_portal.services.review_service import ReviewService
from utils.fake_supabase import FakeSupabase, bind

REVIEWER = {"id": "u-rev", "roles": ["reviewer"]}


def _seed(paper_status="submitted", reviews=None):
    return FakeSupabase(
        {
            "manuscripts": [
                {"id": "m1", "title": "Quantum Dots", "status": paper_status, "version": 1, "editor_id": "u-ed"}
            ],
            "user_profiles": [
                {"id": "u-rev", "email": "rev@uni.edu", "full_name": "Rae Reviewer"},
                {"id": "u-ed", "email": "ed@uni.edu", "full_name": "Eddie Editor"},
            ],
            "reviews": reviews or [],
        }
    )


def _service(db):
    svc = ReviewService()
    bind(svc, db)
    return svc


def _submit_body():
    return ReviewSubmitRequest(
        scores=ReviewScores(originality=8, methodology=7, technical=9, clarity=6, references=7),
        recommendation="minor_revision",
        comments_to_author="Nice work",
    )


def test_invite_creates_zeroed_review_and_moves_paper_to_under_review():
    db = _seed()
    svc = _service(db)

    out = svc.invite_reviewer(paper_id="m1", reviewer_id="u-rev", due_date="2026-05-01", changed_by="u-ed")

    review = db.rows("reviews")[0]
    assert out["review_id"] == review["id"]
    assert review["status"] == "invited"
    assert review["version"] == 1
    assert set(review["scores"].values()) == {0}
    assert db.rows("manuscripts")[0]["status"] == "under_review"
    note = next(n for n in db.rows("notifications") if n["user_id"] == "u-rev")
    assert "2026-05-01" in note["message"]


def test_duplicate_open_invitation_is_409():
    db = _seed(
        paper_status="under_review",
        reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "version": 1, "status": "accepted"}],
    )
    with pytest.raises(HTTPException) as exc:
        _service(db).invite_reviewer(paper_id="m1", reviewer_id="u-rev", due_date=None, changed_by="u-ed")
    assert exc.value.status_code == 409


def test_invite_unknown_reviewer_is_404():
    with pytest.raises(HTTPException) as exc:
        _service(_seed()).invite_reviewer(paper_id="m1", reviewer_id="ghost", due_date=None, changed_by="u-ed")
    assert exc.value.status_code == 404


def test_invite_rolls_back_paper_status_when_insert_fails():
    db = _seed()
    db.fail("reviews", "insert")
    with pytest.raises(HTTPException) as exc:
        _service(db).invite_reviewer(paper_id="m1", reviewer_id="u-rev", due_date=None, changed_by="u-ed")
    assert exc.value.status_code == 500
    assert db.rows("manuscripts")[0]["status"] == "submitted"


def test_accepting_invitation_notifies_editor():
    db = _seed(
        paper_status="under_review",
        reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "reviewer_name": "Rae", "status": "invited"}],
    )
    svc = _service(db)

    out = svc.respond(review_id="r1", response="accept", reason=None, profile=REVIEWER)

    assert out["status"] == "accepted"
    assert db.rows("reviews")[0]["responded_at"]
    note = next(n for n in db.rows("notifications") if n["user_id"] == "u-ed")
    assert note["message"].endswith("Quantum Dots")


def test_decline_records_reason_and_cannot_be_repeated():
    db = _seed(reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "status": "invited"}])
    svc = _service(db)

    svc.respond(review_id="r1", response="decline", reason="Too busy", profile=REVIEWER)
    assert db.rows("reviews")[0]["decline_reason"] == "Too busy"
    assert db.rows("notifications") == []

    with pytest.raises(HTTPException) as exc:
        svc.respond(review_id="r1", response="accept", reason=None, profile=REVIEWER)
    assert exc.value.status_code == 409


def test_other_reviewer_cannot_respond():
    db = _seed(reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "status": "invited"}])
    with pytest.raises(HTTPException) as exc:
        _service(db).respond(review_id="r1", response="accept", reason=None, profile={"id": "x", "roles": ["reviewer"]})
    assert exc.value.status_code == 403


def test_submit_review_completes_and_notifies_editor():
    db = _seed(
        paper_status="under_review",
        reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "status": "accepted"}],
    )
    svc = _service(db)

    out = svc.submit_review(review_id="r1", body=_submit_body(), profile=REVIEWER)

    review = db.rows("reviews")[0]
    assert out["review"]["status"] == "completed"
    assert review["scores"]["technical"] == 9
    assert review["recommendation"] == "minor_revision"
    assert review["completed_at"]
    assert any(n["user_id"] == "u-ed" and n["title"] == "Review Submitted" for n in db.rows("notifications"))


def test_submit_completed_review_again_is_409():
    db = _seed(reviews=[{"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "status": "completed"}])
    with pytest.raises(HTTPException) as exc:
        _service(db).submit_review(review_id="r1", body=_submit_body(), profile=REVIEWER)
    assert exc.value.status_code == 409


def test_submit_missing_review_is_404():
    with pytest.raises(HTTPException) as exc:
        _service(_seed()).submit_review(review_id="nope", body=_submit_body(), profile=REVIEWER)
    assert exc.value.status_code == 404


def test_list_reviews_filters_by_reviewer():
    db = _seed(
        reviews=[
            {"id": "r1", "paper_id": "m1", "reviewer_id": "u-rev", "assigned_at": "2026-01-01"},
            {"id": "r2", "paper_id": "m1", "reviewer_id": "u-other", "assigned_at": "2026-01-02"},
            {"id": "r3", "paper_id": "m2", "reviewer_id": "u-rev", "assigned_at": "2026-01-03"},
        ]
    )
    svc = _service(db)
    assert [r["id"] for r in svc.list_reviews(reviewer_id="u-rev")] == ["r3", "r1"]
    assert [r["id"] for r in svc.list_reviews(paper_id="m1")] == ["r2", "r1"]


def test_scores_are_bounded():
    with pytest.raises(ValueError):
        ReviewScores(originality=11, methodology=0, technical=0, clarity=0, references=0)
