"""
Unlock token manager and the two-stage account unlock.

A locked account receives a link carrying the unlock_token. Landing on the
link reveals the matching email_token; submitting it is Stage A (email
verified). Accounts with two-factor enabled must then pass Stage B with a
TOTP code and the short-lived intermediate token issued by Stage A.
"""

import secrets
from datetime import timedelta
from typing import Optional
from sqlalchemy import delete, or_, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.authentication import create_scoped_token, decode_scoped_token
from app.core.database import as_utc, utc_now
from app.core.email import send_account_locked_email, send_account_unlocked_email
from app.core.error_handling import (
    EmailDeliveryError,
    InfrastructureError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from app.core.logging import app_logger, security_event_logger
from app.core.settings import settings
from app.src.models.unlock_tokens import AccountUnlockToken
from app.src.models.users import User
from app.src.schema.security import UnlockTokenCheck, UnlockTokenIssue
from app.src.schema.users import AccountStatusEnum
from app.src.services.lockout import LOCKOUT_DURATION_MINUTES, is_account_locked, unlock_account
from app.src.services.two_factor import verify_totp
from app.src.services.users import get_user_by_id, get_user_by_primary_email, public_user

TOKEN_EXPIRY_HOURS = settings.unlock_token_expiry_hours
UNLOCK_TOKEN_PURPOSE = "account_unlock"

TOKEN_NOT_FOUND = "Invalid unlock token"
TOKEN_USED = "Unlock token has already been used"
TOKEN_EXPIRED = "Unlock token has expired"


def _check_row(row: Optional[AccountUnlockToken]) -> Optional[str]:
    if row is None:
        return TOKEN_NOT_FOUND
    if row.is_used:
        return TOKEN_USED
    if as_utc(row.expires_at) <= utc_now():
        return TOKEN_EXPIRED
    return None


async def generate_unlock_token(
    session: AsyncSession, user_id: int, ip_address: Optional[str]
) -> UnlockTokenIssue:
    """Invalidate every outstanding token of the user, then issue a fresh pair."""
    now = utc_now()
    await session.exec(
        update(AccountUnlockToken)
        .where(
            AccountUnlockToken.user_id == user_id,
            AccountUnlockToken.is_used.is_(False),
        )
        .values(is_used=True, used_at=now)
    )

    token = AccountUnlockToken(
        user_id=user_id,
        unlock_token=secrets.token_urlsafe(32),
        email_token=secrets.token_urlsafe(32),
        ip_address=ip_address,
        expires_at=now + timedelta(hours=TOKEN_EXPIRY_HOURS),
    )
    session.add(token)
    await session.commit()
    await session.refresh(token)

    return UnlockTokenIssue(
        token_id=token.id,
        unlock_token=token.unlock_token,
        email_token=token.email_token,
        expires_at=as_utc(token.expires_at),
    )


async def verify_unlock_token(session: AsyncSession, unlock_token: str) -> UnlockTokenCheck:
    result = await session.exec(
        select(AccountUnlockToken).where(AccountUnlockToken.unlock_token == unlock_token)
    )
    row = result.first()
    reason = _check_row(row)
    if reason:
        return UnlockTokenCheck(valid=False, reason=reason)
    return UnlockTokenCheck(
        valid=True,
        token_id=row.id,
        user_id=row.user_id,
        email_token=row.email_token,
    )


async def use_unlock_token(session: AsyncSession, token_id: int) -> None:
    result = await session.exec(
        select(AccountUnlockToken).where(AccountUnlockToken.id == token_id)
    )
    row = result.first()
    if row is None or row.is_used:
        return
    row.is_used = True
    row.used_at = utc_now()
    session.add(row)
    await session.commit()


async def _locked_user(session: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if user.account_status != AccountStatusEnum.LOCKED.value:
        raise ValidationError("Account is not locked")
    return user


async def describe_unlock_token(session: AsyncSession, unlock_token: str) -> dict:
    """What the unlock-link landing page needs: who, and whether 2FA follows."""
    if not unlock_token:
        raise ValidationError("Unlock token is required")

    check = await verify_unlock_token(session, unlock_token)
    if not check.valid:
        raise TokenError(check.reason, status_code=400)

    user = await _locked_user(session, check.user_id)
    return {
        "message": "Unlock token is valid",
        "user": {**public_user(user), "twoFaEnabled": user.two_fa_enabled},
        "emailToken": check.email_token,
        "requiresTwoFA": user.two_fa_enabled,
    }


async def _finish_unlock(
    session: AsyncSession, user: User, token_id: int, ip_address: Optional[str], via_two_fa: bool
) -> None:
    await unlock_account(session, user.id)
    await use_unlock_token(session, token_id)
    security_event_logger.account_unlocked(user.id, ip_address, via_two_fa)

    try:
        await send_account_unlocked_email(user.email, user.full_name)
    except EmailDeliveryError as e:
        app_logger.warning(f"Unlock confirmation email not sent: {e}")


async def verify_email_token(
    session: AsyncSession, email_token: str, ip_address: Optional[str] = None
) -> dict:
    """
    Stage A. Unlocks right away for accounts without two-factor; otherwise
    returns the intermediate token Stage B requires.
    """
    if not email_token:
        raise ValidationError("Email token is required")

    result = await session.exec(
        select(AccountUnlockToken).where(AccountUnlockToken.email_token == email_token)
    )
    row = result.first()
    reason = _check_row(row)
    if reason:
        raise TokenError(reason, status_code=400)

    user = await _locked_user(session, row.user_id)

    row.email_verified = True
    row.email_verified_at = utc_now()
    session.add(row)
    await session.commit()

    if not user.two_fa_enabled:
        await _finish_unlock(session, user, row.id, ip_address, via_two_fa=False)
        return {
            "message": "Your account has been unlocked",
            "unlocked": True,
            "requiresTwoFA": False,
        }

    temp_token = create_scoped_token(
        UNLOCK_TOKEN_PURPOSE,
        user.id,
        settings.unlock_intermediate_expire_minutes,
        token_id=row.id,
        email_verified=True,
    )
    return {
        "message": "Email verified. Enter your two-factor code to finish unlocking.",
        "emailVerified": True,
        "requiresTwoFA": True,
        "tempToken": temp_token,
    }


async def verify_two_fa_unlock(
    session: AsyncSession, otp: str, temp_token: str, ip_address: Optional[str] = None
) -> dict:
    """Stage B. The intermediate token is re-checked against the stored token row."""
    if not otp or not temp_token:
        raise ValidationError("Two-factor code and temporary token are required")

    payload = decode_scoped_token(temp_token, UNLOCK_TOKEN_PURPOSE)
    if not payload.get("email_verified") or payload.get("token_id") is None:
        raise TokenError("Invalid unlock session or email not verified")

    result = await session.exec(
        select(AccountUnlockToken).where(AccountUnlockToken.id == payload["token_id"])
    )
    row = result.first()
    if row is None or row.is_used or not row.email_verified or row.user_id != payload["user_id"]:
        raise TokenError("Invalid unlock session or email not verified")
    if as_utc(row.expires_at) <= utc_now():
        raise TokenError(TOKEN_EXPIRED)

    user = await _locked_user(session, row.user_id)
    if not user.two_fa_secret:
        raise ValidationError("Two-factor authentication is not set up for this account")

    if not verify_totp(user.two_fa_secret, otp):
        security_event_logger.two_fa_event(user.id, "unlock", False, ip_address)
        raise ValidationError("Invalid two-factor code")

    await _finish_unlock(session, user, row.id, ip_address, via_two_fa=True)
    return {
        "message": "Your account has been unlocked",
        "unlocked": True,
    }


async def issue_and_send_unlock_email(
    session: AsyncSession, user: User, ip_address: Optional[str]
) -> UnlockTokenIssue:
    """Issue a new token pair and email the link. EmailDeliveryError propagates."""
    issued = await generate_unlock_token(session, user.id, ip_address)
    await send_account_locked_email(
        user.email, user.full_name, issued.unlock_token, as_utc(user.locked_until)
    )
    return issued


async def request_new_unlock_email(
    session: AsyncSession, email: str, ip_address: Optional[str] = None
) -> dict:
    if not email:
        raise ValidationError("Email is required")

    user = await get_user_by_primary_email(session, email)
    if user is None:
        raise NotFoundError("User not found")
    if user.account_status != AccountStatusEnum.LOCKED.value:
        raise ValidationError("Account is not locked")

    try:
        await issue_and_send_unlock_email(session, user, ip_address)
    except EmailDeliveryError as e:
        app_logger.error(f"Unlock email could not be sent: {e}")
        raise InfrastructureError("Could not send the unlock email")

    return {
        "message": "A new unlock email has been sent",
        "emailSent": True,
        "lockDuration": LOCKOUT_DURATION_MINUTES,
    }


async def get_lock_status(session: AsyncSession, email: str) -> dict:
    if not email:
        raise ValidationError("Email is required")

    user = await get_user_by_primary_email(session, email)
    if user is None:
        raise NotFoundError("User not found")

    status = await is_account_locked(session, user.id)
    return {
        "isLocked": status.is_locked,
        "lockedUntil": status.locked_until,
        "reason": status.reason,
        "canRequestUnlock": status.is_locked,
    }


async def cleanup_expired_tokens(session: AsyncSession) -> int:
    result = await session.exec(
        delete(AccountUnlockToken).where(
            or_(
                AccountUnlockToken.expires_at < utc_now(),
                AccountUnlockToken.is_used.is_(True),
            )
        ).execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0
