"""
期刊与公开目录 API（首页聚合、院系、统计为公开接口）
"""

from fastapi import APIRouter, Depends

from research_portal.core.roles import require_any_role
from research_portal.models.schemas import JournalCreate
from research_portal.services.journal_service import JournalService

router = APIRouter(tags=["Journals"])


def get_journal_service() -> JournalService:
    return JournalService()


@router.get("/journals")
async def list_journals(service: JournalService = Depends(get_journal_service)):
    return service.list_journals()


@router.post("/journals", status_code=201)
async def create_journal(
    body: JournalCreate,
    _profile: dict = Depends(require_any_role(["admin"])),
    service: JournalService = Depends(get_journal_service),
):
    return service.create_journal(body)


@router.get("/journals/{journal_id}")
async def get_journal(journal_id: str, service: JournalService = Depends(get_journal_service)):
    return service.get_journal(journal_id)


@router.get("/journals/{journal_id}/people")
async def journal_people(journal_id: str, service: JournalService = Depends(get_journal_service)):
    return service.journal_people(journal_id)


@router.get("/public/home-data")
async def home_data(service: JournalService = Depends(get_journal_service)):
    return service.home_data()


@router.get("/departments")
async def list_departments(service: JournalService = Depends(get_journal_service)):
    return service.list_departments()


@router.get("/stats")
async def get_stats(service: JournalService = Depends(get_journal_service)):
    return service.stats()
