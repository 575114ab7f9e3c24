from __future__ import annotations

from enum import Enum
from typing import Literal


class PaperStatus(str, Enum):
    """
    期刊稿件生命周期状态。

    中文注释:
    - 旧数据里存的是展示文案（"Under Review"、"Revision Required"...），读取时用 normalize_paper_status 兼容。
    - 状态机规则集中在 allowed_next，服务层写入前统一校验。
    """

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    REVISION_REQUIRED = "revision_required"
    REVISION_SUBMITTED = "revision_submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DESK_REJECTED = "desk_rejected"
    FINAL_SUBMISSION_REQUESTED = "final_submission_requested"
    FINAL_SUBMITTED = "final_submitted"
    READY_FOR_PUBLICATION = "ready_for_publication"
    PUBLISHED = "published"

    @classmethod
    def allowed_next(cls, current: str | None) -> set[str]:
        c = normalize_paper_status(current)
        if c == cls.SUBMITTED.value:
            return {
                cls.UNDER_REVIEW.value,
                cls.DESK_REJECTED.value,
                cls.REJECTED.value,
                cls.ACCEPTED.value,
                cls.REVISION_REQUIRED.value,
            }
        if c == cls.UNDER_REVIEW.value:
            # 追加审稿人时保持 under_review
            return {
                cls.UNDER_REVIEW.value,
                cls.REVISION_REQUIRED.value,
                cls.ACCEPTED.value,
                cls.REJECTED.value,
                cls.DESK_REJECTED.value,
                cls.FINAL_SUBMISSION_REQUESTED.value,
            }
        if c == cls.REVISION_REQUIRED.value:
            return {cls.REVISION_SUBMITTED.value}
        if c == cls.REVISION_SUBMITTED.value:
            return {
                cls.UNDER_REVIEW.value,
                cls.REVISION_REQUIRED.value,
                cls.ACCEPTED.value,
                cls.REJECTED.value,
                cls.FINAL_SUBMISSION_REQUESTED.value,
            }
        if c == cls.ACCEPTED.value:
            return {
                cls.FINAL_SUBMISSION_REQUESTED.value,
                cls.FINAL_SUBMITTED.value,
                cls.READY_FOR_PUBLICATION.value,
            }
        if c == cls.FINAL_SUBMISSION_REQUESTED.value:
            return {cls.FINAL_SUBMITTED.value}
        if c == cls.FINAL_SUBMITTED.value:
            return {
                cls.READY_FOR_PUBLICATION.value,
                cls.FINAL_SUBMISSION_REQUESTED.value,
                cls.PUBLISHED.value,
            }
        if c == cls.READY_FOR_PUBLICATION.value:
            return {cls.PUBLISHED.value}
        return set()


_LEGACY_STATUS_MAP = {
    "submitted": PaperStatus.SUBMITTED.value,
    "under review": PaperStatus.UNDER_REVIEW.value,
    "revision required": PaperStatus.REVISION_REQUIRED.value,
    "revision submitted": PaperStatus.REVISION_SUBMITTED.value,
    "accepted": PaperStatus.ACCEPTED.value,
    "rejected": PaperStatus.REJECTED.value,
    "desk rejected": PaperStatus.DESK_REJECTED.value,
    "published": PaperStatus.PUBLISHED.value,
    "decision made": PaperStatus.UNDER_REVIEW.value,
}


def normalize_paper_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    if not v:
        return None
    v = _LEGACY_STATUS_MAP.get(v, v)
    try:
        return PaperStatus(v).value
    except ValueError:
        return None


Decision = Literal[
    "accept",
    "reject",
    "desk_reject",
    "minor_revision",
    "major_revision",
    "request_final_submission",
    "send_to_publisher",
]

DECISION_TARGET_STATUS: dict[str, str] = {
    "accept": PaperStatus.ACCEPTED.value,
    "reject": PaperStatus.REJECTED.value,
    "desk_reject": PaperStatus.DESK_REJECTED.value,
    "minor_revision": PaperStatus.REVISION_REQUIRED.value,
    "major_revision": PaperStatus.REVISION_REQUIRED.value,
    "request_final_submission": PaperStatus.FINAL_SUBMISSION_REQUESTED.value,
    "send_to_publisher": PaperStatus.READY_FOR_PUBLICATION.value,
}

DECISION_LABELS: dict[str, str] = {
    "accept": "Accept",
    "reject": "Reject",
    "desk_reject": "Desk Reject",
    "minor_revision": "Minor Revision",
    "major_revision": "Major Revision",
    "request_final_submission": "Request Final Submission",
    "send_to_publisher": "Send to Publisher",
}


def decision_notification(decision: str) -> tuple[str, str, str]:
    """
    返回 (title, message, notification_type)
    """
    label = DECISION_LABELS.get(decision, decision)
    title = f"Decision: {label}"
    message = f"A decision has been made on your paper: {label}. Please check your dashboard for details."
    target = DECISION_TARGET_STATUS.get(decision)
    if target == PaperStatus.ACCEPTED.value:
        return title, message, "success"
    if target in (PaperStatus.REJECTED.value, PaperStatus.DESK_REJECTED.value):
        return title, message, "error"
    if target == PaperStatus.REVISION_REQUIRED.value:
        return title, message, "warning"
    if target == PaperStatus.FINAL_SUBMISSION_REQUESTED.value:
        return (
            title,
            "Your paper has been provisionally accepted. Please submit the final camera-ready version.",
            "success",
        )
    if target == PaperStatus.READY_FOR_PUBLICATION.value:
        return title, "Your paper has been sent to the publisher for final publication.", "success"
    return title, message, "info"


# 作者修回时，以下状态视为“终稿提交”
FINAL_SUBMISSION_SOURCES = {
    PaperStatus.FINAL_SUBMISSION_REQUESTED.value,
    PaperStatus.ACCEPTED.value,
}
