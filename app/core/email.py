from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict
from urllib.parse import urlencode
import smtplib

from app.core.error_handling import EmailDeliveryError
from app.core.logging import app_logger
from app.core.settings import settings


def build_unlock_url(unlock_token: str, email: str) -> str:
    query = urlencode({"token": unlock_token, "email": email})
    return f"{settings.frontend_url}/unlock-account?{query}"


def _account_locked(data: Dict[str, Any]):
    name = data.get("username") or "there"
    unlock_url = data["unlock_url"]
    locked_until = data.get("locked_until")
    until_line = f"It stays locked until {locked_until} UTC unless you unlock it." if locked_until else ""
    subject = "Your CampusLearning account has been locked"
    html_body = f"""
    <html>
        <body>
            <h2>Hi {name},</h2>
            <p>We locked your account after several failed sign-in attempts.</p>
            <p>{until_line}</p>
            <p>If this was you, click the link below to confirm your email and unlock your account:</p>
            <a href="{unlock_url}">Unlock Account</a>
            <p>Or copy and paste this link into your browser:</p>
            <p>{unlock_url}</p>
            <p><strong>This link expires in {settings.unlock_token_expiry_hours} hours.</strong></p>
            <p>If this wasn't you, we recommend changing your password once you are back in.</p>
        </body>
    </html>
    """
    text_body = f"""
    Hi {name},
    We locked your account after several failed sign-in attempts.
    {until_line}
    To unlock your account, open this link:
    {unlock_url}
    This link expires in {settings.unlock_token_expiry_hours} hours.
    """
    return subject, text_body, html_body


def _account_unlocked(data: Dict[str, Any]):
    name = data.get("username") or "there"
    subject = "Your CampusLearning account has been unlocked"
    html_body = f"""
    <html>
        <body>
            <h2>Hi {name},</h2>
            <p>Your account has been unlocked and you can sign in again.</p>
            <p>Two-factor authentication is now required for your account.</p>
        </body>
    </html>
    """
    text_body = f"""
    Hi {name},
    Your account has been unlocked and you can sign in again.
    Two-factor authentication is now required for your account.
    """
    return subject, text_body, html_body


def _two_fa_setup(data: Dict[str, Any]):
    name = data.get("username") or "there"
    subject = "Two-factor authentication enabled"
    html_body = f"""
    <html>
        <body>
            <h2>Hi {name},</h2>
            <p>Two-factor authentication was just enabled on your account.</p>
            <p>If you didn't do this, contact support immediately.</p>
        </body>
    </html>
    """
    text_body = f"""
    Hi {name},
    Two-factor authentication was just enabled on your account.
    If you didn't do this, contact support immediately.
    """
    return subject, text_body, html_body


def _password_reset(data: Dict[str, Any]):
    name = data.get("username") or "there"
    code = data["code"]
    minutes = data.get("expires_minutes", settings.password_reset_expire_minutes)
    subject = "Your CampusLearning password reset code"
    html_body = f"""
    <html>
        <body>
            <h2>Hi {name},</h2>
            <p>Use this code to reset your password:</p>
            <p style="font-size: 24px; letter-spacing: 4px;"><strong>{code}</strong></p>
            <p>The code expires in {minutes} minutes and works once.</p>
            <p>If you didn't ask for a reset, you can ignore this email.</p>
        </body>
    </html>
    """
    text_body = f"""
    Hi {name},
    Your password reset code is {code}.
    It expires in {minutes} minutes and works once.
    If you didn't ask for a reset, you can ignore this email.
    """
    return subject, text_body, html_body


def _login_otp(data: Dict[str, Any]):
    name = data.get("username") or "there"
    code = data["code"]
    minutes = data.get("expires_minutes", settings.login_otp_expire_minutes)
    subject = "Your CampusLearning sign-in code"
    html_body = f"""
    <html>
        <body>
            <h2>Hi {name},</h2>
            <p>Your sign-in code is:</p>
            <p style="font-size: 24px; letter-spacing: 4px;"><strong>{code}</strong></p>
            <p>It expires in {minutes} minutes. Never share it with anyone.</p>
        </body>
    </html>
    """
    text_body = f"""
    Hi {name},
    Your sign-in code is {code}.
    It expires in {minutes} minutes. Never share it with anyone.
    """
    return subject, text_body, html_body


TEMPLATES = {
    "account_locked": _account_locked,
    "account_unlocked": _account_unlocked,
    "two_fa_setup": _two_fa_setup,
    "password_reset": _password_reset,
    "login_otp": _login_otp,
}


def _deliver(message: MIMEMultipart) -> None:
    if not settings.email_delivery_enabled:
        app_logger.info(
            f"Email delivery disabled, skipping '{message['Subject']}' to {message['To']}"
        )
        return
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_username and settings.smtp_password:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailDeliveryError(f"Failed to send email to {message['To']}: {e}") from e


async def send_security_notification(kind: str, recipient: str, data: Dict[str, Any]) -> None:
    """
    Render and send one of the security notifications.

    Args:
        kind (str): One of TEMPLATES (account_locked, password_reset, login_otp, ...)
        recipient (str): Destination address
        data (dict): Template values (username, unlock_url, locked_until, code)

    Raises:
        EmailDeliveryError: The transport rejected the message
    """
    if kind not in TEMPLATES:
        raise ValueError(f"Unknown notification kind: {kind}")

    subject, text_body, html_body = TEMPLATES[kind](data)

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = settings.smtp_from_email
    message["To"] = recipient

    message.attach(MIMEText(text_body, "plain"))
    message.attach(MIMEText(html_body, "html"))

    _deliver(message)
    app_logger.info(f"{kind} email sent to {recipient}", extra={"event_type": "email_sent"})


async def send_account_locked_email(email: str, username: str, unlock_token: str, locked_until=None):
    await send_security_notification(
        "account_locked",
        email,
        {
            "username": username,
            "unlock_url": build_unlock_url(unlock_token, email),
            "locked_until": locked_until.strftime("%Y-%m-%d %H:%M") if locked_until else None,
        },
    )


async def send_account_unlocked_email(email: str, username: str):
    await send_security_notification("account_unlocked", email, {"username": username})


async def send_email_code(kind: str, email: str, username: str, code: str, expires_minutes: int):
    await send_security_notification(
        kind, email, {"username": username, "code": code, "expires_minutes": expires_minutes}
    )
