"""
Authentication orchestrator.

login() walks the state machine

    IP_CHECK -> CREDENTIAL_CHECK -> ACCOUNT_LOCK_CHECK -> STATUS_GATE ->
    PASSWORD_VERIFY -> [LOCKOUT_ON_FAILURE] -> [FORCE_2FA_SETUP] ->
    [2FA_CHALLENGE] -> SESSION_ISSUED

strictly in order. Every terminal failure records a LoginAttempt with a
specific reason before the error is raised.

verify_login_otp() runs the same machine with an emailed code in place of
the password. Password reset codes go through forgot_password() and
reset_password().
"""

import re
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.authentication import (
    DUMMY_PASSWORD_HASH,
    create_access_token,
    create_refresh_token,
    create_scoped_token,
    get_password_hash,
    verify_password,
    verify_token,
)
from app.core.database import utc_now
from app.core.email import send_email_code
from app.core.error_handling import (
    AccountStatusError,
    AuthenticationError,
    AuthFlowError,
    ConflictError,
    EmailDeliveryError,
    InfrastructureError,
    LockedError,
    TokenError,
    ValidationError,
)
from app.core.logging import auth_logger, security_event_logger
from app.core.settings import settings
from app.src.models.email_codes import LoginOtp, PasswordReset
from app.src.models.users import User
from app.src.schema.users import AccountStatusEnum, RegisterRequest
from app.src.services import two_factor
from app.src.services.email_codes import CODE_INVALID, check_code, issue_code
from app.src.services.lockout import (
    MAX_FAILED_ATTEMPTS,
    TIME_WINDOW_MINUTES,
    check_account_locking,
    check_ip_blocking,
    is_account_locked,
    lock_account,
)
from app.src.services.login_attempts import record_login_attempt
from app.src.services.unlock_tokens import issue_and_send_unlock_email
from app.src.services.users import (
    create_user,
    email_in_use,
    get_user_by_id,
    get_user_by_username,
    normalize_email,
    public_user,
    record_successful_login,
    resolve_login_email,
    set_offline,
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,30}$")
MIN_PASSWORD_LENGTH = 6

GENERIC_CREDENTIALS_MESSAGE = "Email or password is incorrect"
RESET_REQUESTED_MESSAGE = "If an account with that email exists, a password reset code has been sent."
LOGIN_CODE_SENT_MESSAGE = "If an account with that email exists, a sign-in code has been sent."


def validate_registration(payload: RegisterRequest) -> None:
    if not payload.username or not payload.email or not payload.password or not payload.fullName:
        raise ValidationError("Please fill in all required fields")
    if not EMAIL_PATTERN.match(payload.email.strip()):
        raise ValidationError("Invalid email address")
    if not USERNAME_PATTERN.match(payload.username):
        raise ValidationError(
            "Username may only contain letters, numbers and underscores and must be 3-30 characters long"
        )
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


async def register_user(session: AsyncSession, payload: RegisterRequest) -> dict:
    validate_registration(payload)

    if await get_user_by_username(session, payload.username):
        raise ConflictError("Username is already taken", status_code=400)
    if await email_in_use(session, payload.email):
        raise ConflictError("Email is already in use", status_code=400)

    try:
        user = await create_user(
            session,
            username=payload.username,
            email=payload.email,
            password=payload.password,
            full_name=payload.fullName.strip(),
            date_of_birth=payload.dateOfBirth,
            school=payload.school,
        )
    except IntegrityError:
        # Lost a race with a concurrent registration of the same username/email
        await session.rollback()
        raise ConflictError("Username or email is already in use", status_code=400)

    auth_logger.info(f"User registered: {user.username}", extra={"user_id": user.id})
    return {
        "message": "Registration successful",
        "user": public_user(user),
    }


async def login(
    session: AsyncSession,
    email: Optional[str],
    password: Optional[str],
    ip_address: str,
    user_agent: Optional[str] = None,
) -> dict:
    if not email or not password:
        raise ValidationError("Email and password are required")

    email = normalize_email(email)
    try:
        return await _login(session, email, password, ip_address, user_agent)
    except AuthFlowError:
        raise
    except Exception as e:
        auth_logger.exception(f"Login failed with a system error for {email}")
        try:
            await session.rollback()
            await record_login_attempt(
                session, ip_address, email, None, False, user_agent, f"System error: {e}"
            )
        except Exception:
            auth_logger.exception("Could not record the failed login after a system error")
        raise InfrastructureError("An error occurred during login. Please try again later.") from e


async def _login(
    session: AsyncSession,
    email: str,
    password: str,
    ip_address: str,
    user_agent: Optional[str],
) -> dict:
    await _check_ip_block(session, email, ip_address, user_agent)

    user = await resolve_login_email(session, email)
    if user is None:
        # Keep the response time in line with a real password check
        verify_password(password, DUMMY_PASSWORD_HASH)
        await record_login_attempt(
            session, ip_address, email, None, False, user_agent, "Email not found"
        )
        raise AuthenticationError(GENERIC_CREDENTIALS_MESSAGE)

    await _check_account_usable(session, user, email, ip_address, user_agent)

    if not verify_password(password, user.password):
        await record_login_attempt(
            session, ip_address, email, user.id, False, user_agent, "Invalid password"
        )
        await _lock_if_threshold_reached(session, user, email, ip_address)

    await record_login_attempt(session, ip_address, email, user.id, True, user_agent)
    return await _complete_sign_in(session, user, ip_address)


async def _check_ip_block(
    session: AsyncSession, email: str, ip_address: str, user_agent: Optional[str]
) -> None:
    ip_status = await check_ip_blocking(session, ip_address)
    if not ip_status.is_blocked:
        return
    await record_login_attempt(
        session, ip_address, email, None, False, user_agent,
        "IP blocked due to multiple failed attempts",
    )
    security_event_logger.ip_blocked(ip_address, ip_status.failed_count, ip_status.time_window)
    retry_after = TIME_WINDOW_MINUTES * 60
    raise LockedError(
        f"Too many failed login attempts. Please try again in {TIME_WINDOW_MINUTES} minutes.",
        status_code=429,
        extra={"blocked": True, "retryAfter": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


async def _check_account_usable(
    session: AsyncSession,
    user: User,
    email: str,
    ip_address: str,
    user_agent: Optional[str],
) -> None:
    """Lock check, then status gate. Both record the refusal before raising."""
    lock_status = await is_account_locked(session, user.id)
    if lock_status.is_locked:
        await record_login_attempt(
            session, ip_address, email, user.id, False, user_agent, "Account is locked"
        )
        raise LockedError(
            "Your account is locked. Check your email for unlock instructions.",
            extra={
                "locked": True,
                "lockedUntil": lock_status.locked_until,
                "reason": lock_status.reason,
            },
        )

    if user.account_status != AccountStatusEnum.ACTIVE.value:
        await record_login_attempt(
            session, ip_address, email, user.id, False, user_agent,
            f"Account status: {user.account_status}",
        )
        if user.account_status == AccountStatusEnum.SUSPENDED.value:
            raise AccountStatusError("Your account has been suspended. Please contact support.")
        raise AccountStatusError("Your account is not active")


async def _complete_sign_in(session: AsyncSession, user: User, ip_address: Optional[str]) -> dict:
    """After the first factor: forced 2FA setup, a 2FA challenge, or a session."""
    if user.require_two_fa and not user.two_fa_enabled:
        setup_token = create_scoped_token(
            two_factor.SETUP_TOKEN_PURPOSE, user.id, settings.two_fa_setup_expire_minutes
        )
        return {
            "message": "Two-factor authentication must be set up before signing in",
            "requireTwoFASetup": True,
            "setupToken": setup_token,
            "user": public_user(user),
        }

    if user.two_fa_enabled:
        return {
            "message": "Enter the code from your authenticator app",
            "twoFaRequired": True,
            "tempToken": two_factor.create_challenge_token(user),
        }

    return await issue_session(session, user, ip_address)


async def _lock_if_threshold_reached(
    session: AsyncSession, user: User, email: str, ip_address: str
) -> None:
    """Raises the failure for a wrong password: 423 once the streak hits the limit, 401 before."""
    check = await check_account_locking(session, email)
    if not check.should_lock:
        raise AuthenticationError(
            GENERIC_CREDENTIALS_MESSAGE,
            extra={"attemptsRemaining": max(0, MAX_FAILED_ATTEMPTS - check.failed_count)},
        )

    lock = await lock_account(
        session, user.id, f"Too many failed login attempts ({check.failed_count})"
    )
    security_event_logger.account_lockout(user.id, email, check.failed_count, ip_address)

    email_sent = True
    try:
        await issue_and_send_unlock_email(session, user, ip_address)
    except EmailDeliveryError as e:
        email_sent = False
        auth_logger.warning(f"Unlock email not sent for user {user.id}: {e}")

    raise LockedError(
        "Your account has been locked after too many failed attempts. "
        "Check your email for unlock instructions.",
        extra={
            "locked": True,
            "lockedUntil": lock.locked_until,
            "unlockEmailSent": email_sent,
            "requireTwoFA": True,
        },
    )


async def issue_session(session: AsyncSession, user: User, ip_address: Optional[str]) -> dict:
    user = await record_successful_login(session, user, ip_address)
    access = create_access_token(user)
    return {
        "message": "Login successful",
        "token": access["access_token"],
        "expires": access["expires"],
        "refreshToken": create_refresh_token(user),
        "user": public_user(user, full=True),
        "requirePasskeySetup": not user.has_passkey,
    }


def _ensure_can_sign_in(user: User) -> None:
    if user.account_status == AccountStatusEnum.LOCKED.value:
        raise LockedError(
            "Your account is locked. Check your email for unlock instructions.",
            extra={"locked": True, "lockedUntil": user.locked_until, "reason": user.lock_reason},
        )
    if user.account_status != AccountStatusEnum.ACTIVE.value:
        raise AccountStatusError("Account is inactive or suspended")


async def complete_two_fa_login(
    session: AsyncSession, code: str, temp_token: Optional[str], ip_address: Optional[str]
) -> dict:
    user = await two_factor.verify_login(session, code, temp_token)
    _ensure_can_sign_in(user)
    return await issue_session(session, user, ip_address)


async def refresh_session(session: AsyncSession, refresh_token: Optional[str]) -> dict:
    if not refresh_token:
        raise ValidationError("Refresh token is required")

    user_id = verify_token(refresh_token, token_type="refresh")
    if user_id is None:
        raise TokenError("Invalid or expired refresh token")

    user = await get_user_by_id(session, user_id)
    if user is None or user.account_status == AccountStatusEnum.DELETED.value:
        raise TokenError("Invalid or expired refresh token")
    _ensure_can_sign_in(user)

    access = create_access_token(user)
    return {
        "token": access["access_token"],
        "expires": access["expires"],
        "refreshToken": refresh_token,
        "user": public_user(user, full=True),
    }


async def logout(session: AsyncSession, user: User) -> dict:
    await set_offline(session, user)
    auth_logger.info(f"User logged out: {user.username}", extra={"user_id": user.id})
    return {"message": "Logged out successfully"}


async def forgot_password(session: AsyncSession, email: Optional[str], ip_address: Optional[str] = None) -> dict:
    """
    Mail a password reset code. The response is the same whether or not the
    address belongs to an account.
    """
    if not email:
        raise ValidationError("Email is required")

    email = normalize_email(email)
    user = await resolve_login_email(session, email)
    if user is not None:
        user_id, username = user.id, user.username
        code = await issue_code(session, PasswordReset, user_id, settings.password_reset_expire_minutes)
        security_event_logger.email_code_event(user_id, "password_reset", "issued", ip_address)
        try:
            await send_email_code(
                "password_reset", email, username, code, settings.password_reset_expire_minutes
            )
        except EmailDeliveryError as e:
            auth_logger.error(f"Password reset code not sent for user {user_id}: {e}")

    return {"success": True, "message": RESET_REQUESTED_MESSAGE}


async def verify_reset_code(session: AsyncSession, email: Optional[str], code: Optional[str]) -> dict:
    """Check a reset code without spending it, so the client can show the new-password form."""
    if not email or not code:
        raise ValidationError("Email and code are required")

    user = await resolve_login_email(session, email)
    if user is None:
        raise ValidationError(CODE_INVALID, extra={"verified": False})
    try:
        await check_code(session, PasswordReset, user.id, code, consume=False)
    except ValidationError as e:
        raise ValidationError(e.detail, extra={"verified": False}) from e

    return {"verified": True, "message": "Code verified"}


async def reset_password(
    session: AsyncSession,
    email: Optional[str],
    code: Optional[str],
    new_password: Optional[str],
    ip_address: Optional[str] = None,
) -> dict:
    if not email or not code or not new_password:
        raise ValidationError("Email, code and new password are required")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    user = await resolve_login_email(session, email)
    if user is None:
        raise ValidationError(CODE_INVALID)
    user_id = user.id
    try:
        await check_code(session, PasswordReset, user_id, code)
    except ValidationError:
        security_event_logger.email_code_event(user_id, "password_reset", "rejected", ip_address)
        raise

    # A locked account stays locked; unlocking goes through the unlock token flow
    user.password = get_password_hash(new_password)
    user.updated_at = utc_now()
    session.add(user)
    await session.commit()

    security_event_logger.email_code_event(user_id, "password_reset", "used", ip_address)
    return {"success": True, "message": "Password reset successful"}


async def request_login_otp(
    session: AsyncSession,
    email: Optional[str],
    ip_address: str,
    user_agent: Optional[str] = None,
) -> dict:
    """Mail a sign-in code. Blocked IPs, locked and inactive accounts are refused as for password login."""
    if not email:
        raise ValidationError("Email is required")

    email = normalize_email(email)
    await _check_ip_block(session, email, ip_address, user_agent)

    user = await resolve_login_email(session, email)
    if user is None:
        return {"success": True, "message": LOGIN_CODE_SENT_MESSAGE}
    await _check_account_usable(session, user, email, ip_address, user_agent)

    user_id, username = user.id, user.username
    code = await issue_code(session, LoginOtp, user_id, settings.login_otp_expire_minutes)
    try:
        await send_email_code("login_otp", email, username, code, settings.login_otp_expire_minutes)
    except EmailDeliveryError as e:
        raise InfrastructureError("Could not send the sign-in code. Please try again later.") from e

    security_event_logger.email_code_event(user_id, "login_otp", "issued", ip_address)
    return {"success": True, "message": LOGIN_CODE_SENT_MESSAGE}


async def verify_login_otp(
    session: AsyncSession,
    email: Optional[str],
    otp: Optional[str],
    ip_address: str,
    user_agent: Optional[str] = None,
) -> dict:
    """
    Passwordless login with an emailed code. The code replaces the password
    only: IP block, lock and status checks and the two-factor step still apply.
    """
    if not email or not otp:
        raise ValidationError("Email and code are required")

    email = normalize_email(email)
    await _check_ip_block(session, email, ip_address, user_agent)

    user = await resolve_login_email(session, email)
    if user is None:
        await record_login_attempt(
            session, ip_address, email, None, False, user_agent, "Email not found"
        )
        raise ValidationError(CODE_INVALID)
    user_id = user.id
    await _check_account_usable(session, user, email, ip_address, user_agent)

    try:
        await check_code(session, LoginOtp, user_id, otp)
    except ValidationError as e:
        await record_login_attempt(
            session, ip_address, email, user_id, False, user_agent, f"Login code rejected: {e.detail}"
        )
        security_event_logger.email_code_event(user_id, "login_otp", "rejected", ip_address)
        raise

    await record_login_attempt(session, ip_address, email, user_id, True, user_agent)
    security_event_logger.email_code_event(user_id, "login_otp", "used", ip_address)
    return await _complete_sign_in(session, user, ip_address)
