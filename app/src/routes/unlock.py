from fastapi import APIRouter, Depends, Request

from app.core.database import SessionDep
from app.core.logging import get_client_ip
from app.core.rate_limit import rate_limit
from app.src.schema.unlock import (
    RequestUnlockEmailRequest,
    VerifyEmailTokenRequest,
    VerifyTwoFAUnlockRequest,
)
from app.src.services import unlock_tokens

router = APIRouter()


@router.get("/verify-token/{token}")
async def verify_token(token: str, session: SessionDep):
    """Landing check for the emailed unlock link."""
    return await unlock_tokens.describe_unlock_token(session, token)


@router.post("/verify-email")
async def verify_email(request: Request, payload: VerifyEmailTokenRequest, session: SessionDep):
    return await unlock_tokens.verify_email_token(
        session, payload.emailToken, get_client_ip(request)
    )


@router.post("/verify-2fa")
async def verify_two_fa(request: Request, payload: VerifyTwoFAUnlockRequest, session: SessionDep):
    return await unlock_tokens.verify_two_fa_unlock(
        session, payload.otp, payload.tempToken, get_client_ip(request)
    )


@router.post("/request-email", dependencies=[Depends(rate_limit("unlock_email"))])
async def request_email(request: Request, payload: RequestUnlockEmailRequest, session: SessionDep):
    return await unlock_tokens.request_new_unlock_email(
        session, payload.email, get_client_ip(request)
    )


@router.get("/status/{email}")
async def lock_status(email: str, session: SessionDep):
    return await unlock_tokens.get_lock_status(session, email)
