"""
邮件发送。

中文注释:
- 通道优先级: SMTP > Resend > 仅记录日志（本地开发）。
- 模板放在 core/templates，统一注入 portal_url。
- 审稿人邀请链接用 itsdangerous 签名，token 中只携带邮箱。
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, Optional

import resend
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import retry, stop_after_attempt, wait_exponential

from research_portal.core.config import PortalConfig, ResendConfig, SMTPConfig, app_config
from research_portal.lib.api_client import supabase_admin
from research_portal.models.email_log import EmailStatus

logger = logging.getLogger("research_portal.mail")

INVITE_TOKEN_SALT = "reviewer-invite"
TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
RESEND_ATTEMPTS = 3

_FROM_ENV = object()


class EmailService:
    def __init__(self, *, smtp_config: Any = _FROM_ENV, resend_config: Any = _FROM_ENV, log_client: Any = _FROM_ENV):
        """
        三个参数缺省时从环境变量 / 全局 client 读取；显式传 None 表示禁用。
        """
        self.smtp_config: Optional[SMTPConfig] = SMTPConfig.from_env() if smtp_config is _FROM_ENV else smtp_config
        self.resend_config: Optional[ResendConfig] = (
            ResendConfig.from_env() if resend_config is _FROM_ENV else resend_config
        )
        self._log_client = supabase_admin if log_client is _FROM_ENV else log_client
        self.portal_config = PortalConfig.from_env()

        if self.resend_config:
            resend.api_key = self.resend_config.api_key

        self._jinja = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self._serializer = URLSafeTimedSerializer(app_config.invite_secret)

    def is_configured(self) -> bool:
        return bool(self.smtp_config or self.resend_config)

    # --- 签名 token ---

    def create_token(self, email: str, salt: str = INVITE_TOKEN_SALT) -> str:
        return self._serializer.dumps(email, salt=salt)

    def verify_token(self, token: str, salt: str = INVITE_TOKEN_SALT, max_age: Optional[int] = None) -> Optional[str]:
        """Return the signed email, or None when the token is tampered with or expired."""
        try:
            return self._serializer.loads(
                token,
                salt=salt,
                max_age=self.portal_config.invite_token_max_age if max_age is None else max_age,
            )
        except (SignatureExpired, BadSignature):
            return None

    # --- 发送 ---

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        return self._jinja.get_template(template_name).render(
            {"portal_url": self.portal_config.frontend_base_url, **context}
        )

    def _send_smtp(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> None:
        cfg = self.smtp_config
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = cfg.from_email
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(cfg.host, cfg.port) as server:
            if cfg.use_starttls:
                server.starttls()
            if cfg.user and cfg.password:
                server.login(cfg.user, cfg.password)
            server.sendmail(cfg.from_email, [to_email], msg.as_string())

    @retry(stop=stop_after_attempt(RESEND_ATTEMPTS), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    def _send_resend(self, to_email: str, subject: str, html_body: str):
        return resend.Emails.send(
            {"from": self.resend_config.sender, "to": [to_email], "subject": subject, "html": html_body}
        )

    def send_email(self, *, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        """
        同步发送，成功返回 True。任何通道失败都只记录日志，不向上抛出。
        """
        if self.smtp_config:
            channel, send = "SMTP", lambda: self._send_smtp(to_email, subject, html_body, text_body)
        elif self.resend_config:
            channel, send = "Resend", lambda: self._send_resend(to_email, subject, html_body)
        else:
            logger.info("[Email][dev] To %s: %s", to_email, subject)
            return False

        try:
            send()
            return True
        except Exception as e:
            logger.error("[%s] send to %s failed: %s", channel, to_email, e)
            return False

    def send_template_email(self, *, to_email: str, subject: str, template_name: str, context: Dict[str, Any]) -> bool:
        if not self.is_configured():
            logger.info("[Email][dev] %s -> %s (%s)", template_name, to_email, subject)
            return False
        try:
            html = self.render_template(template_name, context)
        except Exception as e:
            logger.error("[Email] template %s render failed: %s", template_name, e)
            return False
        return self.send_email(to_email=to_email, subject=subject, html_body=html)

    def send_email_background(self, to_email: str, subject: str, template_name: str, context: Dict[str, Any]) -> None:
        """
        BackgroundTasks 入口：发送并写 email_logs（开发模式不写日志表）。
        """
        ok = self.send_template_email(
            to_email=to_email, subject=subject, template_name=template_name, context=context
        )
        if self.is_configured():
            self._log_attempt(to_email, subject, template_name, EmailStatus.SENT if ok else EmailStatus.FAILED)

    def _log_attempt(self, recipient: str, subject: str, template_name: str, status: EmailStatus) -> None:
        if self._log_client is None:
            return
        failed = status == EmailStatus.FAILED
        row = {
            "recipient": recipient,
            "subject": subject,
            "template_name": template_name,
            "status": status.value,
            "error_message": "send failed" if failed else None,
            "retry_count": RESEND_ATTEMPTS if failed and not self.smtp_config and self.resend_config else 0,
        }
        try:
            self._log_client.table("email_logs").insert(row).execute()
        except Exception as e:
            logger.warning("[Email] failed to write email_logs: %s", e)


email_service = EmailService()
