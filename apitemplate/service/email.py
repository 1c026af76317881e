from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from apitemplate.logging import get_logger, mask_email
from apitemplate.service.i18n import TranslationTable

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the message is logged instead of sent, so
    local and test runs never need a mail server.
    """

    def __init__(
        self,
        translations: TranslationTable,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "API Template",
        reset_url: str = "http://localhost:8080/reset_password",
        reset_expiry_minutes: int = 15,
    ) -> None:
        self.translations = translations
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.reset_url = reset_url
        self.reset_expiry_minutes = reset_expiry_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        return mask_email(email)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEText(text_body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Connection refused, DNS failure and timeouts all land here
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def reset_link(self, token: str) -> str:
        separator = "&" if "?" in self.reset_url else "?"
        return f"{self.reset_url}{separator}{urlencode({'token': token})}"

    def send_password_reset(self, to_email: str, token: str, locale: Optional[str] = None) -> bool:
        """Send the localized password reset email with its one-time link."""
        subject = self.translations.translate(locale, "password_reset_email_subject")
        body = self.translations.translate(
            locale,
            "password_reset_email_body",
            link=self.reset_link(token),
            minutes=self.reset_expiry_minutes,
        )
        return self._send_email(to_email, subject, body)
