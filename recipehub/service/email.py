from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import quote

from recipehub.logging import get_logger

logger = get_logger(__name__)

APP_NAME = "Recipe Hub"


class NotificationDispatcher(Protocol):
    """Outbound account notifications. Implementations report failure as False."""

    def send_password_reset_email(self, email: str, name: str, token: str) -> bool: ...

    def send_verification_email(self, email: str, name: str, token: str) -> bool: ...

    def send_welcome_email(self, email: str, name: str) -> bool: ...


_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: {accent}; color: white; padding: 30px; text-align: center; }}
        .content {{ background: #f9fafb; padding: 30px; }}
        .button {{ display: inline-block; background: {accent}; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; }}
        .footer {{ text-align: center; padding: 20px; color: #666; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{app_name}</h1><p>{headline}</p></div>
        <div class="content">
            <h2>Hello {name}!</h2>
            <p>{intro}</p>
            <p style="text-align: center; margin: 30px 0;">
                <a href="{url}" class="button">{action}</a>
            </p>
            <p>If the button doesn't work, copy and paste this link into your browser: {url}</p>
            <p>{note}</p>
        </div>
        <div class="footer"><p>&copy; {year} {app_name}. All rights reserved.</p></div>
    </div>
</body>
</html>
"""

_TEXT_LAYOUT = """Hello {name}!

{intro}

{url}

{note}

---
{app_name}
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"

class EmailService:
    """SMTP sender for account emails.

    When SMTP is not configured, messages are logged instead of sent so local
    development can follow links from the console.
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
        from_name: str = APP_NAME,
        frontend_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_minutes: int = 24 * 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:5173").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_minutes = verification_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _link(self, path: str, token: Optional[str] = None) -> str:
        url = f"{self.frontend_url}{path}"
        if token is not None:
            url = f"{url}?token={quote(token, safe='')}"
        return url

    def _render(
        self,
        *,
        name: str,
        headline: str,
        intro: str,
        action: str,
        url: str,
        note: str,
        accent: str,
    ) -> tuple[str, str]:
        safe_name = html.escape(name)
        html_body = _HTML_LAYOUT.format(
            accent=accent,
            app_name=APP_NAME,
            headline=headline,
            name=safe_name,
            intro=intro,
            url=html.escape(url, quote=True),
            action=action,
            note=note,
            year=datetime.now(timezone.utc).year,
        )
        text_body = _TEXT_LAYOUT.format(
            name=name, intro=intro, url=url, note=note, app_name=APP_NAME
        )
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Covers connection refused, DNS failures and timeouts
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset_email(self, email: str, name: str, token: str) -> bool:
        reset_url = self._link("/auth/reset-password", token)
        html_body, text_body = self._render(
            name=name,
            headline="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            action="Reset Password",
            url=reset_url,
            note=f"This link will expire in {_describe_minutes(self.reset_ttl_minutes)}. "
            "If you didn't request this, you can safely ignore this email.",
            accent="#DC2626",
        )
        return self._send_email(email, f"Reset your {APP_NAME} password", html_body, text_body)

    def send_verification_email(self, email: str, name: str, token: str) -> bool:
        verify_url = self._link("/auth/verify-email", token)
        html_body, text_body = self._render(
            name=name,
            headline="Verify your email address",
            intro=f"Thank you for signing up for {APP_NAME}. Please verify your email address to complete your registration.",
            action="Verify Email Address",
            url=verify_url,
            note=f"This verification link will expire in {_describe_minutes(self.verification_ttl_minutes)}. "
            "If you didn't create an account, please ignore this email.",
            accent="#4F46E5",
        )
        return self._send_email(email, f"Verify your {APP_NAME} account", html_body, text_body)

    def send_welcome_email(self, email: str, name: str) -> bool:
        dashboard_url = self._link("/dashboard")
        html_body, text_body = self._render(
            name=name,
            headline="Welcome aboard",
            intro="Your email is verified. Start sharing and discovering recipes today.",
            action="Go to Dashboard",
            url=dashboard_url,
            note="Happy cooking!",
            accent="#059669",
        )
        return self._send_email(email, f"Welcome to {APP_NAME}!", html_body, text_body)
