from unittest.mock import MagicMock

import research_portal.services.storage_service as storage_module
from research_portal.core.config import PortalConfig, SMTPConfig
from research_portal.services.storage_service import file_extension, safe_filename, upload_bytes
from utils.fake_supabase import FakeSupabase


def test_safe_filename_and_extension():
    assert safe_filename("My Thesis (final).pdf") == "My_Thesis_final_.pdf"
    assert safe_filename("   ") == "file"
    assert len(safe_filename("x" * 200)) == 80
    assert file_extension("report.DOCX") == "docx"
    assert file_extension("noext") == "pdf"
    assert file_extension(None, default="png") == "png"


def test_upload_bytes_creates_missing_bucket_and_returns_public_url(monkeypatch):
    db = FakeSupabase()
    db.storage.get_bucket = MagicMock(side_effect=RuntimeError("Bucket not found"))
    db.storage.create_bucket = MagicMock()
    monkeypatch.setattr(storage_module, "supabase_admin", db)

    url = upload_bytes(bucket="manuscripts", path="a/b.pdf", content=b"%PDF", content_type="application/pdf")

    assert url == "https://storage.test/manuscripts/a/b.pdf"
    db.storage.create_bucket.assert_called_once_with("manuscripts", options={"public": True})
    assert db.storage.uploads == [("manuscripts", "a/b.pdf", b"%PDF")]


def test_portal_config_reads_overrides(monkeypatch):
    monkeypatch.setenv("REVIEW_DUE_DAYS", "0")
    monkeypatch.setenv("MANUSCRIPT_ID_PREFIX", "URJ")
    monkeypatch.setenv("FRONTEND_BASE_URL", "https://portal.uni.edu/")
    monkeypatch.setenv("INVITE_TOKEN_MAX_AGE", "not-a-number")

    cfg = PortalConfig.from_env()

    assert cfg.review_due_days == 1
    assert cfg.manuscript_id_prefix == "URJ"
    assert cfg.frontend_base_url == "https://portal.uni.edu"
    assert cfg.invite_token_max_age == 604800


def test_smtp_config_optional(monkeypatch):
    monkeypatch.delenv("SMTP_HOST", raising=False)
    assert SMTPConfig.from_env() is None

    monkeypatch.setenv("SMTP_HOST", "smtp.uni.edu")
    monkeypatch.setenv("SMTP_USER", "mailer@uni.edu")
    monkeypatch.delenv("SMTP_FROM_EMAIL", raising=False)
    monkeypatch.setenv("SMTP_USE_STARTTLS", "false")
    cfg = SMTPConfig.from_env()
    assert cfg.from_email == "mailer@uni.edu"
    assert cfg.use_starttls is False
    assert cfg.port == 587
