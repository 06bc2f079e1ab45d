from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from string import Template
from typing import Optional

from movieauth.logging import get_logger

logger = get_logger(__name__)

_HTML_SHELL = Template(
    """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6;">
  <h1>$heading</h1>
  <p>$greeting</p>
  <p>$lead</p>
  <p><a href="$url">$action</a></p>
  <p>This link expires in <strong>$expiry</strong>.</p>
  <p>$footnote</p>
  <p style="font-size: 12px;">Link not working? Paste this into your browser: $url</p>
</body>
</html>
"""
)

_TEXT_SHELL = Template(
    """$greeting

$lead
$url

This link expires in $expiry.
$footnote

$app_name
"""
)


@dataclass(frozen=True)
class LinkMessage:
    """One transactional mail carrying a single tokenized frontend link."""

    subject: str
    heading: str
    path: str
    greeting: str
    lead: str
    action: str
    footnote: str = ""


PASSWORD_RESET = LinkMessage(
    subject="Password Reset Request - MovieList App",
    heading="Reset your password",
    path="/reset-password",
    greeting="Hello $username,",
    lead="Someone asked to reset the password on your MovieList account. Use this link to choose a new one:",
    action="Reset My Password",
    footnote="If this wasn't you, ignore this message and your password stays the same.",
)

EMAIL_VERIFICATION = LinkMessage(
    subject="Verify your email - MovieList App",
    heading="Verify your email",
    path="/verify-email",
    greeting="Welcome, $username!",
    lead="Confirm this address belongs to you by opening the link below:",
    action="Verify Email",
)

# Checked in order; SMTP errors are OSError subclasses so they come first
_FAILURES = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
    (OSError, "email_connect_failed"),
)


class EmailService:
    """Sends password reset and verification links over SMTP.

    With no SMTP host configured the message is only logged.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        smtp_timeout: float = 30.0,
        from_email: Optional[str] = None,
        from_name: str = "MovieList App",
        frontend_url: str = "http://localhost:3000",
        reset_ttl_minutes: int = 10,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.smtp_timeout = smtp_timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        local, sep, domain = email.partition("@")
        return f"{local[:2]}***@{domain}" if sep else "redacted"

    def _render(self, message: LinkMessage, username: str, token: str, expiry: str):
        url = f"{self.frontend_url}{message.path}?token={token}"
        fields = {
            "heading": message.heading,
            "greeting": Template(message.greeting).safe_substitute(username=username),
            "lead": message.lead,
            "action": message.action,
            "footnote": message.footnote,
            "url": url,
            "expiry": expiry,
            "app_name": self.from_name,
        }
        # usernames are escaped in the HTML part only
        markup = {
            **fields,
            "greeting": Template(message.greeting).safe_substitute(username=html.escape(username)),
        }
        return _HTML_SHELL.substitute(markup), _TEXT_SHELL.substitute(fields)

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout)
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=self.smtp_timeout
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; False when the SMTP exchange fails."""
        redacted = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redacted,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(text_body or "")
        msg.add_alternative(html_body, subtype="html")

        context = ssl.create_default_context()
        try:
            with self._connect(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except OSError as exc:
            event = next(name for kind, name in _FAILURES if isinstance(exc, kind))
            logger.error(
                event,
                to=redacted,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False

        logger.info("email_sent", to=redacted, subject=subject)
        return True

    def _send_link(
        self, message: LinkMessage, to_email: str, username: str, token: str, expiry: str
    ) -> bool:
        html_body, text_body = self._render(message, username, token, expiry)
        return self._send_email(to_email, message.subject, html_body, text_body)

    def send_password_reset(self, to_email: str, username: str, token: str) -> bool:
        return self._send_link(
            PASSWORD_RESET, to_email, username, token, f"{self.reset_ttl_minutes} minutes"
        )

    def send_email_verification(self, to_email: str, username: str, token: str) -> bool:
        return self._send_link(
            EMAIL_VERIFICATION, to_email, username, token, f"{self.verification_ttl_hours} hours"
        )
