from __future__ import annotations

import re
from datetime import datetime, timezone

from research_portal.lib.api_client import supabase_admin

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str | None, *, max_len: int = 80) -> str:
    """
    文件名清洗：只保留字母数字与 . _ -，空格等统一替换为下划线。
    """
    cleaned = _UNSAFE_CHARS.sub("_", str(name or "").strip()).strip("_")
    return (cleaned or "file")[:max_len]


def file_extension(name: str | None, default: str = "pdf") -> str:
    raw = str(name or "")
    if "." not in raw:
        return default
    ext = raw.rsplit(".", 1)[-1].strip().lower()
    return ext or default


def ensure_bucket_exists(*, bucket: str, public: bool = False) -> None:
    """
    确保 Storage bucket 存在（开发/演示环境兜底）。

    中文注释:
    - 正式环境建议用 migration / Dashboard 创建 bucket。
    - 已存在时 create_bucket 会报错，这里按文案识别后忽略。
    """
    storage = getattr(supabase_admin, "storage", None)
    if storage is None or not hasattr(storage, "get_bucket") or not hasattr(storage, "create_bucket"):
        return

    try:
        storage.get_bucket(bucket)
        return
    except Exception:
        pass

    try:
        storage.create_bucket(bucket, options={"public": bool(public)})
    except Exception as e:
        text = str(e).lower()
        if "already" in text or "exists" in text or "duplicate" in text:
            return
        raise


def upload_bytes(
    *,
    bucket: str,
    path: str,
    content: bytes,
    content_type: str,
    upsert: bool = True,
) -> str:
    """
    上传文件并返回可访问 URL。
    """
    ensure_bucket_exists(bucket=bucket, public=True)
    # storage3 的 header value 必须是字符串
    opts = {"content-type": content_type, "upsert": "true" if upsert else "false"}
    supabase_admin.storage.from_(bucket).upload(path, content, opts)
    return public_url(bucket=bucket, path=path)


def public_url(*, bucket: str, path: str) -> str:
    url = supabase_admin.storage.from_(bucket).get_public_url(path)
    return str(url or "").rstrip("?")


def timestamp_prefix() -> str:
    return str(int(datetime.now(timezone.utc).timestamp() * 1000))
