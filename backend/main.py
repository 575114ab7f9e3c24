import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# .env 必须在导入配置模块之前加载
load_dotenv()

from research_portal.core.sentry_init import init_sentry  # noqa: E402

logger = logging.getLogger("research_portal")

try:
    SENTRY_ENABLED = init_sentry()
except Exception as e:
    # 中文注释: Sentry 初始化失败只记录，不阻塞启动
    logger.warning("[sentry] init failed (ignored): %s", e)
    SENTRY_ENABLED = False

from research_portal.api.v1 import (  # noqa: E402
    auth,
    journals,
    manuscripts,
    notifications,
    projects,
    publishing,
    reviews,
    users,
)
from research_portal.core.mail import email_service  # noqa: E402
from research_portal.core.middleware import ExceptionHandlerMiddleware, register_exception_handlers  # noqa: E402

API_PREFIX = "/api/v1"
ROUTERS = (auth, projects, manuscripts, reviews, publishing, journals, notifications, users)
DEFAULT_FRONTEND_ORIGIN = "http://localhost:5173"


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info(
        "[startup] sentry=%s email=%s",
        "on" if SENTRY_ENABLED else "off",
        "configured" if email_service.is_configured() else "log-only",
    )
    yield


def _parse_frontend_origins() -> list[str]:
    """
    CORS 白名单：FRONTEND_ORIGIN（单个）与 FRONTEND_ORIGINS（逗号分隔）合并去重，
    都未配置时只允许本地开发地址。
    """
    raw = [os.environ.get("FRONTEND_ORIGIN") or ""]
    raw.extend((os.environ.get("FRONTEND_ORIGINS") or "").split(","))
    origins = [o.strip().rstrip("/") for o in raw if o and o.strip()]
    return list(dict.fromkeys(origins)) or [DEFAULT_FRONTEND_ORIGIN]


app = FastAPI(
    title="Research Portal API",
    description="University research journal submission and peer-review backend",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ExceptionHandlerMiddleware)
register_exception_handlers(app)

for module in ROUTERS:
    app.include_router(module.router, prefix=API_PREFIX)


@app.get("/")
async def root():
    return {"message": "Research Portal API is running", "docs": "/docs"}


@app.get("/health")
async def health():
    return {"status": "ok"}
