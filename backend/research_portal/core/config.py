import os
from dataclasses import dataclass
from typing import Optional

# === 环境变量读取 ===
# 中文注释: 所有配置均来自环境变量（本地由 main.py 里的 load_dotenv 注入 .env）。


def _env_str(key: str, default: str = "") -> str:
    return (os.environ.get(key) or default).strip()


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_number(key: str, default, cast):
    raw = _env_str(key)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    return _env_number(key, default, int)


def _env_float(key: str, default: float) -> float:
    return _env_number(key, default, float)


@dataclass(frozen=True)
class AppConfig:
    """
    进程级配置：运行环境与 Supabase 连接信息。

    中文注释:
    - staging 与 production 共用同名变量，由部署平台注入不同的值。
    - anon key 历史上有 SUPABASE_ANON_KEY / SUPABASE_KEY 两个名字，前者优先。
    """

    env: str
    supabase_url: str
    supabase_anon_key: str
    supabase_key: str
    jwt_secret: str
    invite_secret: str

    @staticmethod
    def from_env() -> "AppConfig":
        anon_key = _env_str("SUPABASE_ANON_KEY") or _env_str("SUPABASE_KEY")
        service_key = _env_str("SUPABASE_SERVICE_ROLE_KEY")
        return AppConfig(
            env=_env_str("APP_ENV", "development").lower(),
            supabase_url=_env_str("SUPABASE_URL"),
            supabase_anon_key=anon_key,
            supabase_key=service_key,
            jwt_secret=_env_str("SUPABASE_JWT_SECRET", "mock-secret-replace-later"),
            # 邀请链接签名密钥：未单独配置时复用 service role key
            invite_secret=_env_str("INVITE_TOKEN_SECRET") or service_key or "dev-secret",
        )


app_config = AppConfig.from_env()


@dataclass(frozen=True)
class PortalConfig:
    """
    门户业务配置（审稿期限、稿件编号前缀、Storage bucket 等）

    中文注释:
    - 所有值都允许缺省，例如再次送审默认 14 天期限。
    """

    frontend_base_url: str
    review_due_days: int
    manuscript_id_prefix: str
    manuscript_bucket: str
    project_bucket: str
    avatar_bucket: str
    invite_token_max_age: int

    @staticmethod
    def from_env() -> "PortalConfig":
        return PortalConfig(
            frontend_base_url=_env_str("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/"),
            review_due_days=max(1, _env_int("REVIEW_DUE_DAYS", 14)),
            manuscript_id_prefix=_env_str("MANUSCRIPT_ID_PREFIX", "JRP"),
            manuscript_bucket=_env_str("MANUSCRIPT_BUCKET", "manuscripts"),
            project_bucket=_env_str("PROJECT_BUCKET", "project-documents"),
            avatar_bucket=_env_str("AVATAR_BUCKET", "avatars"),
            # 默认 7 天
            invite_token_max_age=_env_int("INVITE_TOKEN_MAX_AGE", 604800),
        )


@dataclass(frozen=True)
class SMTPConfig:
    """
    SMTP 配置。未设置 SMTP_HOST 时返回 None，邮件降级为只记日志。
    """

    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: str
    use_starttls: bool

    @staticmethod
    def from_env() -> Optional["SMTPConfig"]:
        host = _env_str("SMTP_HOST")
        if not host:
            return None
        user = _env_str("SMTP_USER") or None
        return SMTPConfig(
            host=host,
            port=_env_int("SMTP_PORT", 587),
            user=user,
            password=_env_str("SMTP_PASSWORD") or None,
            from_email=_env_str("SMTP_FROM_EMAIL") or user or "no-reply@research-portal.local",
            use_starttls=_env_bool("SMTP_USE_STARTTLS", True),
        )


@dataclass(frozen=True)
class ResendConfig:
    """Resend API（SMTP 不可用时的备选通道）"""

    api_key: str
    sender: str

    @staticmethod
    def from_env() -> Optional["ResendConfig"]:
        api_key = _env_str("RESEND_API_KEY")
        if not api_key:
            return None
        return ResendConfig(
            api_key=api_key,
            sender=_env_str("EMAIL_SENDER", "Research Portal <onboarding@resend.dev>"),
        )


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = _env_str("SENTRY_DSN") or None
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", bool(dsn)),
            dsn=dsn,
            environment=_env_str("SENTRY_ENVIRONMENT", app_config.env),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        )
