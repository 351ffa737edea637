import smtplib

import pytest

from app.core import email as email_module
from app.core.email import build_unlock_url, send_account_locked_email, send_security_notification
from app.core.error_handling import EmailDeliveryError


def test_build_unlock_url():
    url = build_unlock_url("abc_123-XYZ", "student@example.com")

    assert url.endswith("/unlock-account?token=abc_123-XYZ&email=student%40example.com")


async def test_account_locked_email_contains_link(sent_emails):
    await send_account_locked_email("student@example.com", "Student", "tok-1")

    message = sent_emails[-1]
    assert message["To"] == "student@example.com"
    assert "locked" in message["Subject"]
    text = message.get_payload()[0].get_payload(decode=True).decode()
    assert "token=tok-1" in text


async def test_unknown_notification_kind(sent_emails):
    with pytest.raises(ValueError):
        await send_security_notification("newsletter", "student@example.com", {})
    assert sent_emails == []


async def test_smtp_failure_raises_delivery_error(monkeypatch):
    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(email_module.settings, "email_delivery_enabled", True)
    monkeypatch.setattr(email_module.smtplib, "SMTP", BrokenSMTP)

    with pytest.raises(EmailDeliveryError):
        await send_security_notification("account_unlocked", "student@example.com", {"username": "S"})
