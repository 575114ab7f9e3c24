from fastapi import APIRouter, Depends

from research_portal.models.schemas import AcceptInviteRequest
from research_portal.services.user_service import UserService

router = APIRouter(prefix="/auth", tags=["Auth"])


def get_user_service() -> UserService:
    return UserService()


@router.post("/accept-invite")
async def accept_invite(body: AcceptInviteRequest, service: UserService = Depends(get_user_service)):
    """
    受邀审稿人通过邮件中的签名 token 设置密码并激活账号（无需登录）
    """
    return service.accept_invite(token=body.token, password=body.password, full_name=body.full_name)
