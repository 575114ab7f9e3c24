from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from research_portal.models.paper import Decision

# === 请求体模型 (Pydantic v2) ===
# 中文注释: 缺字段/类型错误由全局 validation handler 统一转为 400。


def _blank_to_none(value):
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return value


# --- 研究项目 ---


class AssignReviewerRequest(BaseModel):
    """分配（或邀请新）审稿人"""
    due_date: str
    reviewer_id: Optional[str] = None
    review_type: int = 1
    assigned_by: Optional[str] = None
    is_invite: bool = False
    new_reviewer_name: Optional[str] = None
    new_reviewer_email: Optional[str] = None
    new_reviewer_designation: Optional[str] = None
    new_reviewer_university: Optional[str] = None

    @field_validator(
        "due_date",
        "reviewer_id",
        "assigned_by",
        "new_reviewer_name",
        "new_reviewer_email",
        "new_reviewer_designation",
        "new_reviewer_university",
        mode="before",
    )
    @classmethod
    def normalize_strings(cls, value):
        return _blank_to_none(value)


class DecideProposalRequest(BaseModel):
    decision: str
    comments: Optional[str] = None


class ManualReviewRequest(BaseModel):
    """研究办公室代录审稿结果"""
    reviewer_id: str
    total_marks: float
    status: int
    review_type: int = 1
    marks_breakdown: Optional[Dict[str, Any]] = None
    review_comments: Optional[str] = None


class SetBudgetRequest(BaseModel):
    allocated_budget: Any = None


class UpdateProjectDetailsRequest(BaseModel):
    title: str
    code_no: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return _blank_to_none(value)


class DeleteProjectRequest(BaseModel):
    password: str = Field(..., min_length=1)
    current_user_id: str = Field(..., min_length=1)


# --- 期刊稿件 ---


class AssignEditorRequest(BaseModel):
    editor_id: str


class DeskRejectRequest(BaseModel):
    reason: Optional[str] = None


class DecisionRequest(BaseModel):
    decision: Decision
    comments: Optional[str] = None


class ReassignReviewersRequest(BaseModel):
    due_date: Optional[str] = None


class AssignIssueRequest(BaseModel):
    issue_id: str = Field(..., min_length=1)


# --- 审稿 ---


class ReviewInviteRequest(BaseModel):
    paper_id: str
    reviewer_id: str
    due_date: Optional[str] = None


class ReviewRespondRequest(BaseModel):
    response: Literal["accept", "decline"]
    reason: Optional[str] = None


class ReviewScores(BaseModel):
    originality: int = Field(..., ge=0, le=10)
    methodology: int = Field(..., ge=0, le=10)
    technical: int = Field(..., ge=0, le=10)
    clarity: int = Field(..., ge=0, le=10)
    references: int = Field(..., ge=0, le=10)


class ReviewSubmitRequest(BaseModel):
    scores: ReviewScores
    recommendation: Literal["accept", "minor_revision", "major_revision", "reject"]
    comments_to_author: Optional[str] = None
    comments_to_editor: Optional[str] = None


# --- 出版 ---


class VolumeCreate(BaseModel):
    journal_id: str = Field(..., min_length=1)
    year: int
    title: Optional[str] = None


class IssueCreate(BaseModel):
    volume_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    issue_number: int
    description: Optional[str] = None


# --- 期刊 ---


class JournalCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    issn: Optional[str] = None
    editor_in_chief_id: Optional[str] = None
    cover_image_url: Optional[str] = None


# --- 通知 ---


class MarkReadRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


# --- 用户 ---


class UpdateRolesRequest(BaseModel):
    roles: List[str]


class UpdateUserJournalsRequest(BaseModel):
    editor_journals: Optional[List[str]] = None
    reviewer_journals: Optional[List[str]] = None
    assigned_journals: Optional[List[str]] = None


class FavoriteToggleRequest(BaseModel):
    paper_id: str = Field(..., min_length=1)


class AcceptInviteRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = None
