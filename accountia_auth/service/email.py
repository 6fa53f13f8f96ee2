from __future__ import annotations

import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from accountia_auth.config import Settings
from accountia_auth.logging import get_logger

logger = get_logger(__name__)

CONFIRMATION_SUBJECT = "Confirm Your Accountia Account"
PASSWORD_RESET_SUBJECT = "Password Reset Request for Accountia"

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""

CONFIRMATION_TEMPLATE = (
    """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>"""
    + _STYLE
    + """    </style>
</head>
<body>
    <div class="container">
        <h1>Confirm your email</h1>
        <p>Thanks for joining Accountia! Please confirm your email address by clicking the button below:</p>
        <p style="margin: 30px 0;">
            <a href="{{.ConfirmationLink}}" class="button">Confirm Email</a>
        </p>
        <div class="footer">
            <p>&copy; {{.Year}} Accountia</p>
            <p>If the button doesn't work, copy and paste this URL: {{.ConfirmationLink}}</p>
        </div>
    </div>
</body>
</html>
"""
)

PASSWORD_RESET_TEMPLATE = (
    """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>"""
    + _STYLE
    + """    </style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;">
            <a href="{{.FrontendUrl}}/en/reset-password?token={{.Token}}" class="button">Reset Password</a>
        </p>
        <p>Your reset code is <strong>{{.Token}}</strong>. It expires in one hour.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>&copy; {{.Year}} Accountia</p>
        </div>
    </div>
</body>
</html>
"""
)


EMAIL_CONFIRMED_PAGE_TEMPLATE = (
    """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Accountia</title>
    <style>"""
    + _STYLE
    + """    </style>
</head>
<body>
    <div class="container">
        <h1>{{.Heading}}</h1>
        <p>{{.Message}}</p>
        <p style="margin: 30px 0;">
            <a href="{{.FrontendUrl}}/en/login" class="button">Go to login</a>
        </p>
        <div class="footer">
            <p>&copy; {{.Year}} Accountia</p>
        </div>
    </div>
</body>
</html>
"""
)


def render_template(template: str, values: dict[str, str]) -> str:
    html = template
    for key, value in values.items():
        html = html.replace("{{." + key + "}}", value)
    return html


def render_email_confirmed_page(success: bool, message: str, frontend_url: str) -> str:
    """HTML shown to the browser that followed a confirmation link."""
    return render_template(
        EMAIL_CONFIRMED_PAGE_TEMPLATE,
        {
            "Heading": "Email confirmed" if success else "Confirmation failed",
            "Message": escape(message),
            "FrontendUrl": frontend_url.rstrip("/"),
            "Year": str(datetime.now(timezone.utc).year),
        },
    )


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the service runs in dev mode and only
    logs what it would have sent.
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
        from_name: str = "Accountia",
        api_base_url: str = "http://localhost:4789",
        frontend_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.api_base_url = api_base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            api_base_url=settings.api_base_url,
            frontend_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, to_email: str, subject: str, html_body: str) -> bool:
        """Send an HTML email. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
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
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def confirmation_link(self, token: str) -> str:
        return f"{self.api_base_url}/api/auth/confirm-email/{token}"

    def send_confirmation_email(self, to_email: str, token: str) -> bool:
        html = render_template(
            CONFIRMATION_TEMPLATE,
            {
                "ConfirmationLink": self.confirmation_link(token),
                "Year": str(datetime.now(timezone.utc).year),
            },
        )
        return self.send(to_email, CONFIRMATION_SUBJECT, html)

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        html = render_template(
            PASSWORD_RESET_TEMPLATE,
            {
                "Token": token,
                "FrontendUrl": self.frontend_url,
                "Year": str(datetime.now(timezone.utc).year),
            },
        )
        return self.send(to_email, PASSWORD_RESET_SUBJECT, html)


__all__ = [
    "CONFIRMATION_SUBJECT",
    "PASSWORD_RESET_SUBJECT",
    "EmailService",
    "render_email_confirmed_page",
    "render_template",
]
