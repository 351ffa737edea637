from fastapi import APIRouter, Request

from app.core.authentication import CurrentUser, OptionalUser
from app.core.database import SessionDep
from app.core.logging import get_client_ip
from app.src.schema.auth import TwoFALoginRequest
from app.src.schema.two_factor import TwoFADisableRequest, TwoFASetupRequest, TwoFAVerifyRequest
from app.src.services import auth_service, two_factor

router = APIRouter()


@router.get("/status")
async def two_fa_status(current_user: CurrentUser):
    return two_factor.get_status(current_user)


@router.post("/setup")
async def setup(payload: TwoFASetupRequest, session: SessionDep, current_user: OptionalUser):
    """
    Start 2FA setup. Signed-in users call this with their access token; a
    forced setup right after login sends the setupToken in the body instead.
    """
    return await two_factor.init_setup(session, user=current_user, setup_token=payload.setupToken)


@router.post("/verify")
async def verify(payload: TwoFAVerifyRequest, session: SessionDep, current_user: OptionalUser):
    return await two_factor.verify_and_enable(
        session, payload.code, token=payload.token, user=current_user
    )


@router.post("/verify-login")
async def verify_login(request: Request, payload: TwoFALoginRequest, session: SessionDep):
    return await auth_service.complete_two_fa_login(
        session, payload.code, payload.token, get_client_ip(request)
    )


@router.post("/disable")
async def disable(payload: TwoFADisableRequest, session: SessionDep, current_user: CurrentUser):
    return await two_factor.disable(session, current_user, payload.password)
