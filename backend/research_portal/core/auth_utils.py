import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from research_portal.core.config import app_config
from research_portal.lib.api_client import supabase

logger = logging.getLogger("research_portal.auth")

# Supabase access token 的签名算法；其它算法交给 Auth API 校验
LOCAL_ALGORITHM = "HS256"
AUDIENCE = "authenticated"

security = HTTPBearer()


def _unauthorized(detail: str = "Token is invalid or expired") -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def _decode_locally(token: str) -> dict:
    claims = jwt.decode(token, app_config.jwt_secret, algorithms=[LOCAL_ALGORITHM], audience=AUDIENCE)
    if not claims.get("sub"):
        raise _unauthorized("Invalid token payload")
    return {"id": claims["sub"], "email": claims.get("email")}


def _verify_with_auth_api(token: str) -> dict:
    try:
        resp = supabase.auth.get_user(token)
    except Exception as e:
        # 中文注释: 网络或配置问题一律按鉴权失败处理，不返回 500
        logger.warning("[Auth] remote token check failed: %s", e)
        raise _unauthorized() from e
    user = getattr(resp, "user", None)
    if user is None:
        raise _unauthorized("Invalid token payload")
    return {"id": user.id, "email": user.email}


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    校验 Bearer token，返回 {id, email}
    """
    token = credentials.credentials
    try:
        if jwt.get_unverified_header(token).get("alg") == LOCAL_ALGORITHM:
            return _decode_locally(token)
    except JWTError as e:
        logger.info("[Auth] JWT rejected: %s", e)
        raise _unauthorized() from e
    return _verify_with_auth_api(token)
