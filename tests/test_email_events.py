"""Tests for outbound mail and lifecycle event publication."""

import json
import smtplib
from unittest.mock import MagicMock, patch

import httpx

from movieauth.service.email import EmailService
from movieauth.service.events import EventPublisher
from movieauth.storage.models import LocalAccount, Role, User


def _user() -> User:
    return User.new("alice", LocalAccount(role=Role.CUSTOMER, password_hash="h"), email="alice@example.com")


class TestEmailService:
    def test_unconfigured_logs_instead_of_sending(self):
        service = EmailService()
        with patch("movieauth.service.email.logger") as mock_logger:
            assert service.send_password_reset("alice@example.com", "alice", "tok") is True
        assert mock_logger.info.call_args[0][0] == "email_dev_mode"
        assert mock_logger.info.call_args[1]["to"] == "al***@example.com"

    def test_reset_link(self):
        service = EmailService(frontend_url="https://app.example.com/", reset_ttl_minutes=10)
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_password_reset("alice@example.com", "alice", "abc123")
        to_email, subject, html_body, text_body = send.call_args[0]
        assert to_email == "alice@example.com"
        assert "https://app.example.com/reset-password?token=abc123" in text_body
        assert "10 minutes" in html_body

    def test_verification_link(self):
        service = EmailService(frontend_url="https://app.example.com", verification_ttl_hours=24)
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_email_verification("alice@example.com", "alice", "xyz")
        text_body = send.call_args[0][3]
        assert "https://app.example.com/verify-email?token=xyz" in text_body
        assert "24 hours" in text_body

    def test_username_is_escaped_in_html_only(self):
        service = EmailService()
        name = "<img src=x onerror=alert(1)>"
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_password_reset("alice@example.com", name, "abc123")
        _, _, html_body, text_body = send.call_args[0]
        assert name not in html_body
        assert "Hello &lt;img src=x onerror=alert(1)&gt;," in html_body
        assert f"Hello {name}," in text_body

    def test_sends_over_starttls(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer@example.com",
            smtp_password="pw",
        )
        with patch("movieauth.service.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            assert service.send_email_verification("alice@example.com", "alice", "xyz") is True
        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "pw")
        assert server.sendmail.call_args[0][:2] == ("mailer@example.com", "alice@example.com")

    def test_connection_failure_returns_false(self):
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        with patch(
            "movieauth.service.email.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")
        ), patch("movieauth.service.email.logger") as mock_logger:
            assert service.send_password_reset("alice@example.com", "alice", "tok") is False
        assert mock_logger.error.call_args[0][0] == "email_connect_failed"

    def test_auth_failure_returns_false(self):
        service = EmailService(
            smtp_host="smtp.example.com", smtp_user="mailer@example.com", smtp_password="bad"
        )
        with patch("movieauth.service.email.smtplib.SMTP") as smtp, patch(
            "movieauth.service.email.logger"
        ) as mock_logger:
            server = smtp.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"denied")
            assert service.send_password_reset("alice@example.com", "alice", "tok") is False
        assert mock_logger.error.call_args[0][0] == "email_auth_failed"


class TestEventPublisher:
    async def test_disabled_without_url(self):
        publisher = EventPublisher()
        assert not publisher.is_enabled
        assert await publisher.user_registered(_user()) is False

    async def test_posts_json_message(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        publisher = EventPublisher(
            "https://events.example.com/hook", transport=httpx.MockTransport(handler)
        )
        user = _user()
        assert await publisher.user_logged_in(user, ip="10.0.0.1", user_agent="ua") is True
        message = seen[0]
        assert message["event_type"] == "user_logged_in"
        assert message["user_id"] == user.id
        assert message["data"] == {
            "username": "alice",
            "role": "customer",
            "ip_address": "10.0.0.1",
            "user_agent": "ua",
        }
        assert message["timestamp"]

    async def test_error_status_is_logged(self):
        publisher = EventPublisher(
            "https://events.example.com/hook",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with patch("movieauth.service.events.logger") as mock_logger:
            assert await publisher.password_reset_requested(_user()) is False
        assert mock_logger.warning.call_args[0][0] == "event_publish_http_error"
        assert mock_logger.warning.call_args[1]["status_code"] == 503

    async def test_transport_failure_is_logged(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        publisher = EventPublisher(
            "https://events.example.com/hook", transport=httpx.MockTransport(handler)
        )
        with patch("movieauth.service.events.logger") as mock_logger:
            assert await publisher.user_registered(_user()) is False
        assert mock_logger.warning.call_args[0][0] == "event_publish_failed"
        assert mock_logger.warning.call_args[1]["error_type"] == "ConnectError"
