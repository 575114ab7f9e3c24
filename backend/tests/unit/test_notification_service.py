from unittest.mock import MagicMock

from research_portal.services.notification_service import NotificationService
from utils.fake_supabase import FakeSupabase


def _service(db):
    svc = NotificationService()
    svc.client = db
    svc.email = MagicMock()
    return svc


def test_notify_user_writes_row_and_emails_profile_address():
    db = FakeSupabase({"user_profiles": [{"id": "u1", "email": "u1@uni.edu", "full_name": "Uma"}]})
    svc = _service(db)

    row = svc.notify_user(user_id="u1", title="Hello", message="World", type="success", related_id="m1")

    assert row["user_id"] == "u1"
    assert row["is_read"] is False
    svc.email.send_email_background.assert_called_once_with(
        "u1@uni.edu", "Hello", "notification.html", {"name": "Uma", "message": "World"}
    )


def test_notify_user_uses_background_tasks_when_given():
    db = FakeSupabase({"user_profiles": [{"id": "u1", "email": "u1@uni.edu"}]})
    svc = _service(db)
    tasks = MagicMock()

    svc.notify_user(user_id="u1", title="T", message="M", background_tasks=tasks)

    tasks.add_task.assert_called_once()
    svc.email.send_email_background.assert_not_called()


def test_notification_failure_never_raises():
    db = FakeSupabase({"user_profiles": [{"id": "u1"}]})
    db.fail("notifications", "insert")
    svc = _service(db)

    assert svc.create_notification(user_id="u1", title="T", message="M") is None
    assert svc.create_notification(user_id="u1", title="T", message="M", type="bogus") is None
    assert svc.notify_user(user_id=None, title="T", message="M") is None


def test_paper_author_ids_dedupes_registered_coauthors():
    paper = {
        "author_id": "a",
        "co_authors": [
            {"user_id": "b", "is_registered": True},
            {"user_id": "a", "is_registered": True},
            {"user_id": "c", "is_registered": False},
            "junk",
        ],
    }
    assert NotificationService.paper_author_ids(paper) == ["a", "b"]


def test_project_email_skipped_without_recipient():
    svc = _service(FakeSupabase())
    assert svc.send_project_email(to_email=None, email_type="PROPOSAL_ACCEPTED", project_title="P") is False
    assert svc.send_project_email(to_email="r@uni.edu", email_type="PROPOSAL_ACCEPTED", project_title="P") is True
    args = svc.email.send_email_background.call_args.args
    assert args[1] == "Your Research Proposal Has Been Accepted"
    assert args[2] == "project_notification.html"


def test_mark_read_only_touches_own_rows():
    db = FakeSupabase(
        {
            "notifications": [
                {"id": "n1", "user_id": "me", "is_read": False},
                {"id": "n2", "user_id": "me", "is_read": False},
                {"id": "n3", "user_id": "someone-else", "is_read": False},
            ]
        }
    )
    svc = _service(db)

    assert svc.unread_count(user_id="me") == 2
    assert svc.mark_read(user_id="me", notification_ids=["n1", "n3"]) == 1
    assert {n["id"]: n["is_read"] for n in db.rows("notifications")} == {"n1": True, "n2": False, "n3": False}
    assert svc.mark_one_read(user_id="me", notification_id="n3") is None
    assert svc.mark_all_read(user_id="me") == 1
    assert svc.unread_count(user_id="me") == 0
