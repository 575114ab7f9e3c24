import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("research_portal.http")

REQUEST_ID_HEADER = "X-Request-ID"

# 校验错误的 loc 前缀，不作为字段名的一部分返回
_LOCATION_PREFIXES = {"body", "query", "path", "form", "header"}


def _error_response(status_code: int, message, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    请求日志 + 兜底异常处理。

    中文注释:
    - 每个请求带上 X-Request-ID（沿用客户端传入的值，否则生成），日志与响应头一致，便于排查。
    - 路由里未处理的异常统一转为 500，不把内部错误信息返回给前端。
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except HTTPException as exc:
            response = _error_response(exc.status_code, exc.detail)
        except Exception:
            logger.exception("[%s] unhandled error on %s %s", request_id, request.method, request.url.path)
            response = _error_response(500, "Internal server error", type="server_error")

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "[%s] %s %s -> %s (%.1fms)",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response


def _describe_validation_errors(exc: RequestValidationError) -> list[str]:
    fields: list[str] = []
    for err in exc.errors():
        parts = [str(p) for p in (err.get("loc") or ()) if p not in _LOCATION_PREFIXES]
        name = ".".join(parts) or "body"
        if name not in fields:
            fields.append(name)
    return fields


async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = _error_response(exc.status_code, exc.detail)
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    缺字段或格式错误统一返回 400（不沿用 FastAPI 默认的 422），并列出出错字段。
    """
    fields = _describe_validation_errors(exc)
    return _error_response(400, f"Missing or invalid fields: {', '.join(fields)}", fields=fields)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
