"""
Supabase 客户端。

中文注释:
- `supabase` 使用 anon key（校验登录态、读取 profile），`supabase_admin` 使用 service role key。
- 两者都在第一次被访问时才真正创建：缺少环境变量时模块仍可导入，单测直接替换 service.client。
"""

from functools import lru_cache
from typing import Any, Callable

from supabase import Client, create_client

from research_portal.core.config import app_config


def _connect(key: str, key_name: str) -> Client:
    if not app_config.supabase_url:
        raise RuntimeError("SUPABASE_URL is required")
    if not key:
        raise RuntimeError(f"{key_name} is required")
    return create_client(app_config.supabase_url, key)


@lru_cache(maxsize=1)
def get_anon_client() -> Client:
    return _connect(app_config.supabase_anon_key, "SUPABASE_ANON_KEY")


@lru_cache(maxsize=1)
def get_admin_client() -> Client:
    # 未配置 service role key 时退回 anon key（本地开发）
    return _connect(app_config.supabase_key or app_config.supabase_anon_key, "SUPABASE_SERVICE_ROLE_KEY")


class _DeferredClient:
    def __init__(self, resolve: Callable[[], Client]):
        self._resolve = resolve

    def __getattr__(self, item: str) -> Any:
        return getattr(self._resolve(), item)


supabase: Client = _DeferredClient(get_anon_client)  # type: ignore[assignment]
supabase_admin: Client = _DeferredClient(get_admin_client)  # type: ignore[assignment]


def create_anon_supabase_client() -> Client:
    """
    新建一个独立的 anon client，用于 sign_in_with_password 校验密码。
    登录会改写 client 的 session，所以不能复用全局实例。
    """
    return _connect(app_config.supabase_anon_key, "SUPABASE_ANON_KEY")
