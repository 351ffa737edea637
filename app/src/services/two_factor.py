"""
TOTP (Time-based One-Time Password) two-factor authentication.
RFC 6238 compliant - Compatible with Google Authenticator, Authy, Aegis

- 6-digit codes, 30-second time step, HMAC-SHA1, Base32 secrets
- Verification accepts +/- TOTP_VALID_WINDOW steps everywhere (setup,
  login and account unlock)
"""

import base64
import io
from datetime import datetime
from typing import Optional, Union

import pyotp
import qrcode
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.authentication import create_scoped_token, decode_scoped_token, verify_password
from app.core.database import utc_now
from app.core.email import send_security_notification
from app.core.error_handling import (
    AuthenticationError,
    EmailDeliveryError,
    TokenError,
    ValidationError,
)
from app.core.logging import app_logger, security_event_logger
from app.core.settings import settings
from app.src.models.users import User
from app.src.services.users import get_user_by_id

TOTP_VALID_WINDOW = settings.totp_valid_window

SETUP_TOKEN_PURPOSE = "two_fa_setup"
CHALLENGE_TOKEN_PURPOSE = "two_fa_challenge"


def generate_totp_secret() -> str:
    """Generate a new random Base32 TOTP secret."""
    return pyotp.random_base32()


def get_totp_uri(secret: str, account_name: str, issuer: str = settings.totp_issuer_name) -> str:
    """
    otpauth://totp/{issuer}:{account}?secret={secret}&issuer={issuer}

    This is what gets encoded in the QR code.
    """
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def generate_qr_code_data_url(uri: str) -> str:
    """
    Render the provisioning URI as a PNG data URL the frontend can put
    straight into an <img src=...>.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{encoded}"


def verify_totp(
    secret: Optional[str],
    code: Optional[str],
    for_time: Union[int, datetime, None] = None,
) -> bool:
    if not secret or not code:
        return False

    code = code.strip().replace(" ", "")
    if len(code) != 6 or not code.isdigit():
        return False

    totp = pyotp.TOTP(secret)
    if for_time is None:
        return totp.verify(code, valid_window=TOTP_VALID_WINDOW)
    return totp.verify(code, for_time=for_time, valid_window=TOTP_VALID_WINDOW)


async def _user_from_token(session: AsyncSession, token: str, purpose: str) -> User:
    payload = decode_scoped_token(token, purpose)
    user = await get_user_by_id(session, payload["user_id"])
    if user is None:
        raise TokenError("Invalid or expired token")
    return user


async def _resolve_setup_user(
    session: AsyncSession, user: Optional[User], token: Optional[str]
) -> User:
    # A setup token wins over the session: forced setup happens before login completes
    if token:
        return await _user_from_token(session, token, SETUP_TOKEN_PURPOSE)
    if user is None:
        raise TokenError("Authentication required")
    return user


async def init_setup(
    session: AsyncSession,
    user: Optional[User] = None,
    setup_token: Optional[str] = None,
) -> dict:
    """
    Start (or resume) two-factor setup.

    A pending secret is reused when one exists so that reloading the setup
    screen does not invalidate a code the user already scanned. The secret
    is stored right away but stays inert until verify_and_enable succeeds.
    """
    user = await _resolve_setup_user(session, user, setup_token)

    if user.two_fa_enabled:
        raise ValidationError("Two-factor authentication is already enabled for this account")

    if not user.two_fa_secret:
        user.two_fa_secret = generate_totp_secret()
        user.updated_at = utc_now()
        session.add(user)
        await session.commit()

    uri = get_totp_uri(user.two_fa_secret, user.email or user.username)
    temp_token = create_scoped_token(
        SETUP_TOKEN_PURPOSE, user.id, settings.two_fa_setup_expire_minutes
    )

    security_event_logger.two_fa_event(user.id, "setup_started", True)

    return {
        "message": "Scan the QR code with your authenticator app",
        "qrCodeData": generate_qr_code_data_url(uri),
        "secret": user.two_fa_secret,
        "tempToken": temp_token,
    }


async def verify_and_enable(
    session: AsyncSession,
    code: str,
    token: Optional[str] = None,
    user: Optional[User] = None,
) -> dict:
    user = await _resolve_setup_user(session, user, token)

    if user.two_fa_enabled:
        raise ValidationError("Two-factor authentication is already enabled for this account")
    if not user.two_fa_secret:
        raise ValidationError("Two-factor setup has not been started")

    if not verify_totp(user.two_fa_secret, code):
        security_event_logger.two_fa_event(user.id, "enable", False)
        raise ValidationError("Invalid verification code", extra={"success": False})

    user.two_fa_enabled = True
    user.require_two_fa = False
    user.updated_at = utc_now()
    session.add(user)
    await session.commit()

    security_event_logger.two_fa_event(user.id, "enable", True)

    try:
        await send_security_notification("two_fa_setup", user.email, {"username": user.full_name})
    except EmailDeliveryError as e:
        app_logger.warning(f"Two-factor confirmation email not sent: {e}")

    return {
        "message": "Two-factor authentication has been enabled",
        "success": True,
    }


def create_challenge_token(user: User) -> str:
    return create_scoped_token(
        CHALLENGE_TOKEN_PURPOSE,
        user.id,
        settings.two_fa_challenge_expire_minutes,
        two_fa_allowed=True,
    )


async def verify_login(session: AsyncSession, code: str, temp_token: Optional[str]) -> User:
    """
    Check the OTP submitted in the middle of a login against the challenge
    token. Returns the user; issuing the session is up to the caller.
    """
    payload = decode_scoped_token(temp_token, CHALLENGE_TOKEN_PURPOSE)
    if not payload.get("two_fa_allowed"):
        raise TokenError("Invalid or expired token")

    user = await get_user_by_id(session, payload["user_id"])
    if user is None:
        raise TokenError("Invalid or expired token")
    if not user.two_fa_enabled or not user.two_fa_secret:
        raise ValidationError("Two-factor authentication is not set up for this account")

    if not verify_totp(user.two_fa_secret, code):
        security_event_logger.two_fa_event(user.id, "login", False)
        raise AuthenticationError("Invalid verification code")

    security_event_logger.two_fa_event(user.id, "login", True)
    return user


async def disable(session: AsyncSession, user: User, password: Optional[str]) -> dict:
    if not password:
        raise ValidationError("Password is required to disable two-factor authentication")
    if not verify_password(password, user.password):
        security_event_logger.two_fa_event(user.id, "disable", False)
        raise AuthenticationError("Incorrect password")

    user.two_fa_secret = None
    user.two_fa_enabled = False
    user.updated_at = utc_now()
    session.add(user)
    await session.commit()

    security_event_logger.two_fa_event(user.id, "disable", True)
    return {
        "message": "Two-factor authentication has been disabled",
        "success": True,
    }


def get_status(user: User) -> dict:
    return {"enabled": bool(user.two_fa_enabled), "required": bool(user.require_two_fa)}
