from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Request, status

from app.core.authentication import CurrentUser, optional_oauth2_scheme
from app.core.database import SessionDep
from app.core.logging import get_client_ip
from app.core.rate_limit import rate_limit
from app.src.schema.auth import (
    ForgotPasswordRequest,
    LoginOtpRequest,
    LoginOtpVerifyRequest,
    LoginRequest,
    OtpRequest,
    ResetPasswordRequest,
    TokenRefreshRequest,
    VerifyResetCodeRequest,
)
from app.src.schema.users import RegisterRequest
from app.src.services import auth_service
from app.src.services.users import public_user

router = APIRouter()


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("register"))],
)
async def register(payload: RegisterRequest, session: SessionDep):
    return await auth_service.register_user(session, payload)


@router.post("/login")
async def login(request: Request, payload: LoginRequest, session: SessionDep):
    """
    Password login.

    Depending on the account this returns a full session, a 2FA challenge
    (twoFaRequired + tempToken) or a forced 2FA setup (requireTwoFASetup +
    setupToken). Failures: 400 missing fields, 401 bad credentials, 403
    inactive account, 423 locked, 429 IP blocked.
    """
    return await auth_service.login(
        session,
        payload.email,
        payload.password,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.post("/login-2fa")
async def login_two_fa(
    request: Request,
    payload: OtpRequest,
    session: SessionDep,
    temp_token: Annotated[Optional[str], Depends(optional_oauth2_scheme)],
):
    """Second login step: bearer challenge token from /login plus the OTP."""
    return await auth_service.complete_two_fa_login(
        session, payload.otp, temp_token, get_client_ip(request)
    )


@router.post("/login-otp/request", dependencies=[Depends(rate_limit("login_otp"))])
async def request_login_otp(request: Request, payload: LoginOtpRequest, session: SessionDep):
    return await auth_service.request_login_otp(
        session,
        payload.email,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.post("/login-otp/verify")
async def verify_login_otp(request: Request, payload: LoginOtpVerifyRequest, session: SessionDep):
    """
    Passwordless login with the emailed code. Same outcomes as /login:
    a session, a 2FA challenge or a forced 2FA setup.
    """
    return await auth_service.verify_login_otp(
        session,
        payload.email,
        payload.otp,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.post("/forgot-password", dependencies=[Depends(rate_limit("password_reset"))])
async def forgot_password(request: Request, payload: ForgotPasswordRequest, session: SessionDep):
    return await auth_service.forgot_password(session, payload.email, get_client_ip(request))


@router.post("/verify-reset-code", dependencies=[Depends(rate_limit("password_reset"))])
async def verify_reset_code(payload: VerifyResetCodeRequest, session: SessionDep):
    return await auth_service.verify_reset_code(session, payload.email, payload.code)


@router.post("/reset-password", dependencies=[Depends(rate_limit("password_reset"))])
async def reset_password(request: Request, payload: ResetPasswordRequest, session: SessionDep):
    return await auth_service.reset_password(
        session, payload.email, payload.code, payload.newPassword, get_client_ip(request)
    )


@router.post("/refresh-token")
async def refresh_token(payload: TokenRefreshRequest, session: SessionDep):
    return await auth_service.refresh_session(session, payload.refreshToken)


@router.post("/logout")
async def logout(session: SessionDep, current_user: CurrentUser):
    return await auth_service.logout(session, current_user)


@router.get("/me")
async def me(current_user: CurrentUser):
    return {
        **public_user(current_user, full=True),
        "image": current_user.image,
        "accountStatus": current_user.account_status,
        "twoFaEnabled": current_user.two_fa_enabled,
        "requireTwoFA": current_user.require_two_fa,
        "lastLoginAt": current_user.last_login_at,
    }
