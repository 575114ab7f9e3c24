from typing import Optional

from fastapi import APIRouter, Depends

from research_portal.core.roles import PUBLISHING_ROLES, require_any_role
from research_portal.models.schemas import IssueCreate, VolumeCreate
from research_portal.services.publishing_service import PublishingService

router = APIRouter(tags=["Publishing"])


def get_publishing_service() -> PublishingService:
    return PublishingService()


@router.get("/volumes")
async def list_volumes(
    journal_id: Optional[str] = None,
    service: PublishingService = Depends(get_publishing_service),
):
    return service.list_volumes(journal_id=journal_id)


@router.post("/volumes", status_code=201)
async def create_volume(
    body: VolumeCreate,
    _profile: dict = Depends(require_any_role(PUBLISHING_ROLES)),
    service: PublishingService = Depends(get_publishing_service),
):
    return service.create_volume(body)


@router.get("/volumes/{volume_id}/issues")
async def list_issues(
    volume_id: str,
    service: PublishingService = Depends(get_publishing_service),
):
    return service.list_issues(volume_id)


@router.post("/issues", status_code=201)
async def create_issue(
    body: IssueCreate,
    _profile: dict = Depends(require_any_role(PUBLISHING_ROLES)),
    service: PublishingService = Depends(get_publishing_service),
):
    return service.create_issue(body)


@router.put("/issues/{issue_id}/publish")
async def publish_issue(
    issue_id: str,
    _profile: dict = Depends(require_any_role(PUBLISHING_ROLES)),
    service: PublishingService = Depends(get_publishing_service),
):
    return service.publish_issue(issue_id)


@router.get("/issues/{issue_id}/papers")
async def list_issue_papers(
    issue_id: str,
    service: PublishingService = Depends(get_publishing_service),
):
    """
    公开目录：只返回已出版稿件
    """
    return service.list_issue_papers(issue_id)
