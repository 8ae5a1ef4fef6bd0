from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from olakz_auth.config import Settings
from olakz_auth.logging import get_logger

logger = get_logger(__name__)

_OTP_COPY = {
    "verify_email": (
        "Verify Your Email - Olakz Ride",
        "Thank you for signing up! Please use the code below to verify your email address.",
    ),
    "reset_password": (
        "Reset Your Password - Olakz Ride",
        "You requested to reset your password. Use the code below to proceed.",
    ),
}

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; line-height: 1.6; color: #333; background: #f4f4f4; }}
        .container {{ max-width: 600px; margin: 20px auto; background: #ffffff; border-radius: 10px; padding: 40px 30px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; color: #667eea; text-align: center; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #888; }}
    </style>
</head>
<body>
    <div class="container">
{content}
        <div class="footer"><p>Olakz Ride</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent and the
    call reports success, so local development flows still complete.
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
        from_name: str = "Olakz Ride",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(self, to: str, subject: str, body: str) -> bool:
        """Send an HTML message; returns False on delivery failure."""
        return self._send_email(to, subject, body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
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

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure and timeouts
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(
        self,
        to_email: str,
        code: str,
        purpose: str,
        *,
        first_name: Optional[str] = None,
        ttl_minutes: int = 10,
    ) -> bool:
        subject, message = _OTP_COPY[purpose]
        greeting = html.escape(first_name or "there")
        content = f"""
        <p>Hello {greeting},</p>
        <p>{message}</p>
        <div class="code">{code}</div>
        <p>This code expires in {ttl_minutes} minutes. If you didn't request it, you can ignore this email.</p>
"""
        text_body = (
            f"Hello {first_name or 'there'},\n\n{message}\n\n{code}\n\n"
            f"This code expires in {ttl_minutes} minutes.\n"
        )
        return self._send_email(
            to_email, subject, _HTML_SHELL.format(content=content), text_body
        )

    def send_welcome(self, to_email: str, first_name: Optional[str] = None) -> bool:
        greeting = html.escape(first_name or "there")
        content = f"""
        <h1>Welcome to Olakz Ride!</h1>
        <p>Hi {greeting}, your email is verified and your account is ready.</p>
"""
        return self._send_email(
            to_email, "Welcome to Olakz Ride!", _HTML_SHELL.format(content=content)
        )


__all__ = ["EmailService"]
