from fastapi import APIRouter, Depends, Request

from app.core.authentication import CurrentUser
from app.core.database import SessionDep
from app.core.logging import get_client_ip
from app.core.rate_limit import rate_limit
from app.src.schema.oauth import (
    ConnectProviderRequest,
    FacebookAuthRequest,
    GoogleAuthRequest,
    OAuthProviderEnum,
)
from app.src.services import oauth

router = APIRouter(dependencies=[Depends(rate_limit("oauth"))])


@router.post("/google")
async def google_auth(request: Request, payload: GoogleAuthRequest, session: SessionDep):
    return await oauth.authenticate(
        session, OAuthProviderEnum.google, payload.token, get_client_ip(request)
    )


@router.post("/facebook")
async def facebook_auth(request: Request, payload: FacebookAuthRequest, session: SessionDep):
    return await oauth.authenticate(
        session, OAuthProviderEnum.facebook, payload.accessToken, get_client_ip(request)
    )


@router.get("/oauth/connections")
async def get_connections(session: SessionDep, current_user: CurrentUser):
    return {
        "success": True,
        "connections": await oauth.list_connections(session, current_user),
    }


@router.post("/oauth/connect/{provider}")
async def connect(
    provider: OAuthProviderEnum,
    payload: ConnectProviderRequest,
    session: SessionDep,
    current_user: CurrentUser,
):
    token = payload.token or payload.accessToken
    return await oauth.connect_provider(session, current_user, provider, token)


@router.delete("/oauth/disconnect/{provider}")
async def disconnect(provider: OAuthProviderEnum, session: SessionDep, current_user: CurrentUser):
    return await oauth.disconnect_provider(session, current_user, provider)
