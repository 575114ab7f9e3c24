from typing import Any

from research_portal.core.config import SentryConfig

_SENSITIVE_KEYS = {
    "password",
    "access_token",
    "refresh_token",
    "token",
    "invite_token",
    "authorization",
    "cookie",
    "set-cookie",
    "service_role_key",
}

# 上传的稿件/报告（pdf、docx）不允许出现在事件里
_BINARY_SIGNATURES = (b"%PDF-", b"PK\x03\x04")


def _looks_like_document(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray)):
        head = bytes(value[:8])
        return any(head.startswith(sig) for sig in _BINARY_SIGNATURES)
    if isinstance(value, str):
        return len(value) > 5000
    return False


def _scrub(value: Any) -> Any:
    """
    递归去除敏感字段与文档内容。
    """
    if _looks_like_document(value):
        return "[Filtered]"

    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if str(k).strip().lower() in _SENSITIVE_KEYS:
                out[str(k)] = "[Filtered]"
                continue
            out[str(k)] = _scrub(v)
        return out

    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]

    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {
                k: v for k, v in headers.items() if str(k).strip().lower() not in _SENSITIVE_KEYS
            }
        # 删除稿件时请求体里带明文密码，请求体一律不上报
        for field in ("cookies", "data", "body"):
            if field in request:
                request[field] = "[Filtered]"
        event["request"] = request

    for section in ("extra", "contexts"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)

    return event


def init_sentry() -> bool:
    """
    初始化 Sentry。未配置 DSN 或显式禁用时返回 False。

    调用方负责 try/except，初始化失败不得阻塞启动。
    """
    cfg = SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=cfg.dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[FastApiIntegration()],
        send_default_pii=False,
        max_request_body_size="never",
        before_send=_before_send,
    )
    return True
