import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from main import app  # noqa: E402
from research_portal.core.roles import get_current_profile  # noqa: E402

# === 全局测试配置 ===
# 中文注释:
# 1. 显式使用 pytest_asyncio.fixture，STRICT 模式下也能正确 await 客户端。
# 2. JWT 用 PyJWT 按 Supabase 的格式签发（aud=authenticated, HS256）。
# 3. 角色通过 app.dependency_overrides[get_current_profile] 注入，每个测试结束后清理。


@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.fixture(autouse=True)
def _reset_overrides():
    yield
    app.dependency_overrides.clear()


def generate_test_token(user_id: str = "00000000-0000-0000-0000-000000000000", *, expired: bool = False) -> str:
    secret = os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
    now = datetime.now(timezone.utc)
    exp = now - timedelta(hours=1) if expired else now + timedelta(hours=1)
    payload = {
        "sub": user_id,
        "email": "test@example.com",
        "aud": "authenticated",
        "exp": exp,
        "iat": now - timedelta(hours=2) if expired else now,
        "role": "authenticated",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_token() -> str:
    return generate_test_token()


@pytest.fixture
def expired_token() -> str:
    return generate_test_token(expired=True)


@pytest.fixture
def as_role():
    """
    用法: as_role("editor") / as_role("admin", user_id="u-1")
    """

    def _set(*roles: str, user_id: str = "00000000-0000-0000-0000-000000000000", email: str = "test@example.com"):
        profile = {"id": user_id, "email": email, "full_name": "Test User", "roles": list(roles)}
        app.dependency_overrides[get_current_profile] = lambda: profile
        return profile

    return _set
