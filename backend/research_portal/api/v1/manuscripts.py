"""
期刊稿件 API：投稿、编辑流转、修回、重新分配审稿人、排期出版。
"""

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from research_portal.core.roles import EDITORIAL_ROLES, PUBLISHING_ROLES, get_current_profile, is_admin, require_any_role
from research_portal.models.schemas import (
    AssignEditorRequest,
    AssignIssueRequest,
    DecisionRequest,
    DeskRejectRequest,
    ReassignReviewersRequest,
)
from research_portal.services.manuscript_service import ManuscriptService, UploadedFile

router = APIRouter(prefix="/manuscripts", tags=["Manuscripts"])

MAX_MANUSCRIPT_FILES = 10


def get_manuscript_service() -> ManuscriptService:
    return ManuscriptService()


async def _read_upload(upload: Optional[UploadFile]) -> Optional[UploadedFile]:
    if upload is None:
        return None
    content = await upload.read()
    if not content:
        return None
    return (upload.filename or "manuscript.pdf", content, upload.content_type or "application/octet-stream")


@router.post("", status_code=201)
async def submit_manuscript(
    background_tasks: BackgroundTasks,
    title: str = Form(...),
    abstract: Optional[str] = Form(None),
    author_name: Optional[str] = Form(None),
    department: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    keywords: Optional[str] = Form(None),
    co_authors: Optional[str] = Form(None),
    journal_id: Optional[str] = Form(None),
    journal_name: Optional[str] = Form(None),
    manuscript: Optional[List[UploadFile]] = File(None),
    cover_letter: Optional[UploadFile] = File(None),
    profile: dict = Depends(get_current_profile),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    """
    投稿（multipart）：manuscript 1..10 个文件，cover_letter 可选；
    keywords / co_authors 接受 JSON 字符串。
    """
    uploads = manuscript or []
    if len(uploads) > MAX_MANUSCRIPT_FILES:
        raise HTTPException(status_code=400, detail=f"At most {MAX_MANUSCRIPT_FILES} manuscript files are allowed")
    files = [f for f in [await _read_upload(u) for u in uploads] if f]

    return service.submit_manuscript(
        author=profile,
        title=title,
        abstract=abstract,
        manuscripts=files,
        cover_letter=await _read_upload(cover_letter),
        author_name=author_name,
        department=department,
        paper_type=type,
        keywords=keywords,
        co_authors=co_authors,
        journal_id=journal_id,
        journal_name=journal_name,
        background_tasks=background_tasks,
    )


@router.get("")
async def list_manuscripts(
    author_id: Optional[str] = None,
    status: Optional[str] = None,
    journal_id: Optional[str] = None,
    editor_id: Optional[str] = None,
    _profile: dict = Depends(get_current_profile),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.list_manuscripts(
        author_id=author_id, status=status, journal_id=journal_id, editor_id=editor_id
    )


@router.get("/{manuscript_id}")
async def get_manuscript(
    manuscript_id: str,
    _profile: dict = Depends(get_current_profile),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.get_manuscript(manuscript_id)


@router.put("/{manuscript_id}/assign-editor")
async def assign_editor(
    manuscript_id: str,
    body: AssignEditorRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.assign_editor(
        manuscript_id=manuscript_id,
        editor_id=body.editor_id,
        changed_by=profile.get("id"),
        background_tasks=background_tasks,
    )


@router.put("/{manuscript_id}/desk-reject")
async def desk_reject(
    manuscript_id: str,
    body: DeskRejectRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.desk_reject(
        manuscript_id=manuscript_id,
        reason=body.reason,
        changed_by=profile.get("id"),
        background_tasks=background_tasks,
    )


@router.post("/{manuscript_id}/decision")
async def record_decision(
    manuscript_id: str,
    body: DecisionRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.record_decision(
        manuscript_id=manuscript_id,
        decision=body.decision,
        comments=body.comments,
        changed_by=profile.get("id"),
        allow_skip=is_admin(profile),
        background_tasks=background_tasks,
    )


@router.post("/{manuscript_id}/revision")
async def submit_revision(
    manuscript_id: str,
    manuscript: Optional[UploadFile] = File(None),
    response_to_reviewers: Optional[UploadFile] = File(None),
    profile: dict = Depends(get_current_profile),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.submit_revision(
        manuscript_id=manuscript_id,
        author=profile,
        manuscript=await _read_upload(manuscript),
        response_to_reviewers=await _read_upload(response_to_reviewers),
        allow_other_author=is_admin(profile),
    )


@router.post("/{manuscript_id}/reassign-reviewers")
async def reassign_reviewers(
    manuscript_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[ReassignReviewersRequest] = None,
    profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.reassign_reviewers(
        manuscript_id=manuscript_id,
        changed_by=profile.get("id"),
        due_date=body.due_date if body else None,
        background_tasks=background_tasks,
    )


@router.delete("/{manuscript_id}/reviewers/{reviewer_id}")
async def remove_reviewer(
    manuscript_id: str,
    reviewer_id: str,
    _profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.remove_reviewer(manuscript_id=manuscript_id, reviewer_id=reviewer_id)


@router.put("/{manuscript_id}/assign-issue")
async def assign_issue(
    manuscript_id: str,
    body: AssignIssueRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(PUBLISHING_ROLES)),
    service: ManuscriptService = Depends(get_manuscript_service),
):
    return service.assign_issue(
        manuscript_id=manuscript_id,
        issue_id=body.issue_id,
        changed_by=profile.get("id"),
        allow_skip=is_admin(profile),
        background_tasks=background_tasks,
    )
