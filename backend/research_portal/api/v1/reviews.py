from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from research_portal.core.roles import EDITORIAL_ROLES, get_current_profile, require_any_role
from research_portal.models.schemas import ReviewInviteRequest, ReviewRespondRequest, ReviewSubmitRequest
from research_portal.services.review_service import ReviewService

router = APIRouter(prefix="/reviews", tags=["Reviews"])


def get_review_service() -> ReviewService:
    return ReviewService()


@router.get("")
async def list_reviews(
    reviewer_id: Optional[str] = None,
    paper_id: Optional[str] = None,
    _profile: dict = Depends(get_current_profile),
    service: ReviewService = Depends(get_review_service),
):
    return service.list_reviews(reviewer_id=reviewer_id, paper_id=paper_id)


@router.post("/invite", status_code=201)
async def invite_reviewer(
    body: ReviewInviteRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(require_any_role(EDITORIAL_ROLES)),
    service: ReviewService = Depends(get_review_service),
):
    return service.invite_reviewer(
        paper_id=body.paper_id,
        reviewer_id=body.reviewer_id,
        due_date=body.due_date,
        changed_by=profile.get("id"),
        background_tasks=background_tasks,
    )


@router.put("/{review_id}/respond")
async def respond_to_invitation(
    review_id: str,
    body: ReviewRespondRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(get_current_profile),
    service: ReviewService = Depends(get_review_service),
):
    return service.respond(
        review_id=review_id,
        response=body.response,
        reason=body.reason,
        profile=profile,
        background_tasks=background_tasks,
    )


@router.put("/{review_id}")
async def submit_review(
    review_id: str,
    body: ReviewSubmitRequest,
    background_tasks: BackgroundTasks,
    profile: dict = Depends(get_current_profile),
    service: ReviewService = Depends(get_review_service),
):
    """
    提交评分与推荐意见（仅 invited / accepted 状态可提交）
    """
    return service.submit_review(
        review_id=review_id,
        body=body,
        profile=profile,
        background_tasks=background_tasks,
    )
