import resend
from typing import Any, Dict, Optional
from tenacity import retry, stop_after_attempt, wait_exponential
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pathlib import Path
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from itsdangerous import URLSafeTimedSerializer, SignatureExpired, BadSignature
from supabase import Client

from botflow.core.config import SMTPConfig, app_config, ResendConfig
from botflow.models.email_log import EmailLog, EmailStatus

# 审稿邀请链接的签名 salt（accept/decline 共用，action 通过查询参数区分）
REVIEW_INVITATION_SALT = "review-invitation"


class EmailService:
    _SENTINEL = object()

    def __init__(
        self,
        *,
        smtp_config: SMTPConfig | None | object = _SENTINEL,
        resend_config: ResendConfig | None | object = _SENTINEL,
        supabase_client: Client | None = None,
    ):
        # 中文注释:
        # - smtp_config / resend_config 支持依赖注入，方便单测与不同环境切换。
        # - 若调用方显式传 None，则视为禁用该 provider（两者都禁用时只记录日志）。
        if smtp_config is self._SENTINEL:
            smtp_config = SMTPConfig.from_env()
        if resend_config is self._SENTINEL:
            resend_config = ResendConfig.from_env()

        self.smtp_config: SMTPConfig | None = smtp_config  # type: ignore[assignment]
        self.resend_config: ResendConfig | None = resend_config  # type: ignore[assignment]

        if self.resend_config:
            resend.api_key = self.resend_config.api_key

        templates_dir = Path(__file__).resolve().parent / "templates"
        self._jinja = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )

        self._serializer = URLSafeTimedSerializer(app_config.supabase_key or "dev-secret")

        # 中文注释: 发送审计写入 email_logs；缺省不写（单测/本地不依赖数据库）
        self._supabase = supabase_client

    def is_configured(self) -> bool:
        return bool(self.smtp_config or self.resend_config)

    def create_token(self, email: str, salt: str) -> str:
        """Generate a secure, time-bound token."""
        return self._serializer.dumps(email, salt=salt)

    def verify_token(self, token: str, salt: str, max_age: int = 604800) -> Optional[str]:
        """
        Verify token and return email if valid.
        Default max_age: 7 days (604800 seconds).
        """
        try:
            return self._serializer.loads(token, salt=salt, max_age=max_age)
        except (SignatureExpired, BadSignature):
            return None

    def invitation_url(self, assignment_id: str, reviewer_email: str) -> str:
        token = self.create_token(reviewer_email, REVIEW_INVITATION_SALT)
        return f"{app_config.frontend_url}/review-invitations/{assignment_id}?token={token}"

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        return self._jinja.get_template(template_name).render(**context)

    def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
    ) -> bool:
        """
        发送邮件（同步）。

        中文注释:
        - SMTP 优先；若 SMTP 未配置但 Resend 已配置，则走 Resend（带重试）。
        - 失败只返回 False，不抛异常：通知失败不能影响主流程。
        """
        if self.smtp_config:
            try:
                msg = MIMEMultipart("alternative")
                msg["Subject"] = subject
                msg["From"] = self.smtp_config.from_email
                msg["To"] = to_email

                if text_body:
                    msg.attach(MIMEText(text_body, "plain", "utf-8"))
                msg.attach(MIMEText(html_body, "html", "utf-8"))

                with smtplib.SMTP(self.smtp_config.host, self.smtp_config.port) as server:
                    if self.smtp_config.use_starttls:
                        server.starttls()
                    if self.smtp_config.user and self.smtp_config.password:
                        server.login(self.smtp_config.user, self.smtp_config.password)
                    server.sendmail(self.smtp_config.from_email, [to_email], msg.as_string())
                return True
            except Exception as e:
                print(f"[SMTP] send failed: {e}")
                return False

        if self.resend_config:
            try:
                self._send_with_retry(to_email, subject, html_body)
                return True
            except Exception as e:
                print(f"[Resend] send failed: {e}")
                return False

        print(f"[Email] no provider configured, skip: to={to_email} subject={subject}")
        return False

    def send_template_email(
        self,
        *,
        to_email: str,
        subject: str,
        template_name: str,
        context: Dict[str, Any],
        manuscript_id: str | None = None,
    ) -> bool:
        if not self.is_configured():
            return False
        try:
            html = self.render_template(template_name, {"subject": subject, **context})
        except Exception as e:
            print(f"[Email] template render failed: {e}")
            return False
        ok = self.send_email(to_email=to_email, subject=subject, html_body=html)
        self._log_attempt(
            to_email,
            subject,
            template_name,
            EmailStatus.SENT if ok else EmailStatus.FAILED,
            manuscript_id=manuscript_id,
            error_message=None if ok else "send failed",
        )
        return ok

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    def _send_with_retry(self, to_email: str, subject: str, html_content: str):
        params = {
            "from": self.resend_config.sender if self.resend_config else "Botflow <no-reply@botflow.local>",
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        return resend.Emails.send(params)

    def _log_attempt(
        self,
        recipient: str,
        subject: str,
        template_name: str,
        status: EmailStatus,
        manuscript_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ):
        if self._supabase is None:
            return
        try:
            row = EmailLog(
                recipient=recipient,
                subject=subject,
                template_name=template_name,
                status=status,
                manuscript_id=manuscript_id,
                error_message=error_message,
            )
            self._supabase.table("email_logs").insert(
                row.model_dump(mode="json", exclude_none=True)
            ).execute()
        except Exception as e:
            print(f"[Email] Failed to log email attempt: {e}")
