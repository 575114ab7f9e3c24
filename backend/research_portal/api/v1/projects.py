"""
研究项目（Research Project）API

中文注释:
- 路由沿用 /papers 前缀（研究办公室前端的历史路径），数据落在 projects 表。
- 状态写入统一经 WorkflowService（状态表校验 + CAS + 审计日志）。
- 研究办公室操作需要 admin / research_officer；admin 额外允许跳过状态机校验。
"""

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from fastapi.responses import Response

from research_portal.core.roles import PROJECT_STAFF_ROLES, get_current_profile, is_admin, require_any_role
from research_portal.models.schemas import (
    AssignReviewerRequest,
    DecideProposalRequest,
    DeleteProjectRequest,
    ManualReviewRequest,
    SetBudgetRequest,
    UpdateProjectDetailsRequest,
)
from research_portal.services.project_service import ProjectService

router = APIRouter(prefix="/papers", tags=["Research Projects"])


def get_project_service() -> ProjectService:
    return ProjectService()


@router.post("/create")
async def create_project(
    title: Optional[str] = Form(None),
    researcher_id: Optional[str] = Form(None),
    fiscal_year_id: Optional[str] = Form(None),
    proposed_budget: Optional[str] = Form(None),
    code_no: Optional[str] = Form(None),
    circular_id: Optional[str] = Form(None),
    abstract: Optional[str] = Form(None),
    problem_domain: Optional[str] = Form(None),
    documents: Optional[List[UploadFile]] = File(None),
    profile: dict = Depends(get_current_profile),
    service: ProjectService = Depends(get_project_service),
):
    files = []
    for doc in documents or []:
        content = await doc.read()
        if content:
            files.append((doc.filename or "document.pdf", content, doc.content_type or "application/pdf"))

    return service.create_project(
        title=title,
        researcher_id=researcher_id,
        fiscal_year_id=fiscal_year_id,
        proposed_budget=proposed_budget,
        code_no=code_no,
        circular_id=circular_id,
        abstract=abstract,
        problem_domain=problem_domain,
        documents=files,
        created_by=profile.get("id"),
    )


@router.get("")
async def list_projects(
    _profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.list_projects()


@router.get("/download-report")
async def download_report(
    format: str = "json",
    _profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    """
    项目汇总报表；format=csv 时返回 CSV 附件。
    """
    rows = service.list_projects()
    if format.lower() == "csv":
        return Response(
            content=service.report_to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="projects_report.csv"'},
        )
    return rows


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    _profile: dict = Depends(get_current_profile),
    service: ProjectService = Depends(get_project_service),
):
    return service.get_project_detail(project_id)


@router.post("/{project_id}/assign-reviewer")
async def assign_reviewer(
    project_id: str,
    body: AssignReviewerRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.assign_reviewer(
        project_id=project_id,
        body=body,
        changed_by=profile.get("id"),
        background_tasks=background_tasks,
    )


@router.post("/{project_id}/reassign-reviewer")
async def reassign_reviewer(
    project_id: str,
    body: AssignReviewerRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.reassign_reviewer(
        project_id=project_id,
        body=body,
        changed_by=profile.get("id"),
        background_tasks=background_tasks,
    )


@router.post("/{project_id}/decide-proposal")
async def decide_proposal(
    project_id: str,
    body: DecideProposalRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.decide_proposal(
        project_id=project_id,
        decision=body.decision,
        comments=body.comments,
        changed_by=profile.get("id"),
        background_tasks=background_tasks,
    )


@router.post("/{project_id}/manual-review")
async def manual_review(
    project_id: str,
    body: ManualReviewRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.manual_review(
        project_id=project_id,
        body=body,
        changed_by=profile.get("id"),
        allow_skip=is_admin(profile),
        background_tasks=background_tasks,
    )


@router.post("/{project_id}/submit-report")
async def submit_report(
    project_id: str,
    file: Optional[UploadFile] = File(None),
    uploaded_by: Optional[str] = Form(None),
    profile: dict = Depends(get_current_profile),
    service: ProjectService = Depends(get_project_service),
):
    content = await file.read() if file is not None else None
    return service.submit_report(
        project_id=project_id,
        filename=file.filename if file is not None else None,
        content=content,
        content_type=file.content_type if file is not None else None,
        uploaded_by=uploaded_by,
        changed_by=profile.get("id"),
    )


@router.put("/{project_id}/mark-complete")
async def mark_complete(
    project_id: str,
    profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.mark_complete(
        project_id=project_id,
        changed_by=profile.get("id"),
        allow_skip=is_admin(profile),
    )


@router.post("/{project_id}/set-budget")
async def set_budget(
    project_id: str,
    body: SetBudgetRequest,
    _profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.set_budget(project_id=project_id, allocated_budget=body.allocated_budget)


@router.patch("/{project_id}/update-details")
async def update_details(
    project_id: str,
    body: UpdateProjectDetailsRequest,
    _profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.update_details(project_id=project_id, title=body.title, code_no=body.code_no)


@router.delete("/{project_id}/delete")
async def delete_project(
    project_id: str,
    body: DeleteProjectRequest,
    _profile: dict = Depends(require_any_role(PROJECT_STAFF_ROLES)),
    service: ProjectService = Depends(get_project_service),
):
    return service.delete_project(
        project_id=project_id,
        password=body.password,
        current_user_id=body.current_user_id,
    )
