from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from bkeep_auth.logging import get_logger

logger = get_logger(__name__)

# Context keys that carry a secret and never reach dev-mode logs
_SECRET_CONTEXT_KEYS = {"otpCode", "resetUrl", "acceptUrl", "token"}


def _password_reset(ctx: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Reset your BKeep password",
        f"""Hi {ctx.get('userName', '')},

We received a request to reset your password. Visit the link below to choose a new password:

{ctx.get('resetUrl', '')}

This link will expire in {ctx.get('expiryMinutes', 60)} minutes.

If you didn't request this, you can safely ignore this email.
""",
    )


def _password_reset_success(ctx: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Your BKeep password was changed",
        f"""Hi {ctx.get('userName', '')},

Your password has been changed successfully. All other sessions were signed out.

If you didn't make this change, please contact support immediately.
""",
    )


def _mfa_otp(ctx: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Your BKeep verification code",
        f"""Hi {ctx.get('userName', '')},

Your verification code is: {ctx.get('otpCode', '')}

This code expires in {ctx.get('expiryMinutes', 5)} minutes.
""",
    )


def _totp_setup(ctx: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Two-factor authentication enabled",
        f"""Hi {ctx.get('userName', '')},

Authenticator app verification has been enabled on your BKeep account.
You will now need to enter a code from your authenticator app when signing in.

If you didn't make this change, please contact support immediately.
""",
    )


def _invitation(ctx: Dict[str, Any]) -> Tuple[str, str]:
    return (
        f"You've been invited to {ctx.get('tenantName', 'BKeep')}",
        f"""Hi {ctx.get('userName', '')},

{ctx.get('senderName', 'A colleague')} invited you to join {ctx.get('tenantName', '')} on BKeep.

Accept the invitation here:

{ctx.get('acceptUrl', '')}

This invitation expires in {ctx.get('expiryDays', 7)} days.
""",
    )


def _welcome(ctx: Dict[str, Any]) -> Tuple[str, str]:
    return (
        "Welcome to BKeep",
        f"""Hi {ctx.get('userName', '')},

Your account for {ctx.get('tenantName', 'BKeep')} is ready. You can sign in at:

{ctx.get('loginUrl', '')}
""",
    )


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "password-reset": _password_reset,
    "password-reset-success": _password_reset_success,
    "mfa-otp": _mfa_otp,
    "totp-setup": _totp_setup,
    "invitation": _invitation,
    "welcome": _welcome,
}


class NotificationService:
    """Fire-and-forget transactional mail.

    Falls back to logging when SMTP is not configured. ``notify`` never
    raises; delivery failures are logged as ``notification_failed``.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "BKeep",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, kind: str, context: Dict[str, Any]) -> Tuple[str, str]:
        template = TEMPLATES.get(kind)
        if template is None:
            raise ValueError(f"unknown notification kind: {kind}")
        return template(context)

    def _deliver(self, to_email: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    async def notify(self, kind: str, to: str, context: Dict[str, Any]) -> bool:
        try:
            subject, body = self.render(kind, context)
            if not self.is_configured:
                logger.info(
                    "notification_dev_mode",
                    kind=kind,
                    to=self._redact_email(to),
                    subject=subject,
                    context_keys=sorted(k for k in context if k not in _SECRET_CONTEXT_KEYS),
                )
                return True
            await asyncio.to_thread(self._deliver, to, subject, body)
            logger.info("notification_sent", kind=kind, to=self._redact_email(to))
            return True
        except (smtplib.SMTPException, ssl.SSLError, OSError, ValueError) as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                to=self._redact_email(to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
