"""
OAuth sign-in and account linking for Google and Facebook.

Provider tokens are verified with the provider itself (Google tokeninfo,
Facebook Graph /me); the confirmed identity is then resolved to a local
account through an existing connection, a matching email, or a new account.
"""

import asyncio
import secrets
from typing import List, Optional

import aiohttp
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.database import utc_now
from app.core.error_handling import (
    AccountStatusError,
    ConflictError,
    InfrastructureError,
    LockedError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from app.core.logging import app_logger, security_event_logger
from app.core.settings import settings
from app.src.models.oauth_connections import OAuthConnection
from app.src.models.users import User
from app.src.schema.oauth import OAuthProviderEnum, ProviderIdentity
from app.src.schema.users import AccountStatusEnum
from app.src.services.auth_service import issue_session
from app.src.services.lockout import lock_status_of
from app.src.services.users import (
    create_user,
    get_user_by_id,
    get_user_owning_email,
    get_user_by_username,
)


async def _fetch_json(url: str, params: dict) -> Optional[dict]:
    """GET url and return the JSON body, or None when the provider rejects the token."""
    timeout = aiohttp.ClientTimeout(total=settings.oauth_http_timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as client:
            async with client.get(url, params=params) as response:
                if response.status != 200:
                    app_logger.info(f"Provider rejected token: {url} returned {response.status}")
                    return None
                return await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        app_logger.error(f"Provider verification request failed: {e}")
        raise InfrastructureError("Could not reach the sign-in provider") from e


async def verify_google_token(id_token: str) -> ProviderIdentity:
    data = await _fetch_json(settings.google_tokeninfo_url, {"id_token": id_token})
    if not data or not data.get("sub"):
        raise TokenError("Invalid Google token")
    if settings.google_client_id and data.get("aud") != settings.google_client_id:
        raise TokenError("Invalid Google token")

    return ProviderIdentity(
        provider=OAuthProviderEnum.google,
        provider_user_id=str(data["sub"]),
        email=data.get("email"),
        email_verified=str(data.get("email_verified", "")).lower() == "true",
        name=data.get("name"),
        picture=data.get("picture"),
    )


async def verify_facebook_token(access_token: str) -> ProviderIdentity:
    data = await _fetch_json(
        settings.facebook_graph_url,
        {"fields": "id,name,email,picture", "access_token": access_token},
    )
    if not data or not data.get("id"):
        raise TokenError("Invalid Facebook token")

    picture = (data.get("picture") or {}).get("data", {}).get("url")
    return ProviderIdentity(
        provider=OAuthProviderEnum.facebook,
        provider_user_id=str(data["id"]),
        email=data.get("email"),
        # Graph only returns an email the user has confirmed
        email_verified=bool(data.get("email")),
        name=data.get("name"),
        picture=picture,
    )


async def verify_provider_token(provider: OAuthProviderEnum, token: Optional[str]) -> ProviderIdentity:
    if not token:
        raise ValidationError("Token was not provided")
    if provider == OAuthProviderEnum.google:
        return await verify_google_token(token)
    return await verify_facebook_token(token)


async def get_connection(
    session: AsyncSession, provider: OAuthProviderEnum, provider_user_id: str
) -> Optional[OAuthConnection]:
    result = await session.exec(
        select(OAuthConnection).where(
            OAuthConnection.provider == provider.value,
            OAuthConnection.provider_user_id == provider_user_id,
        )
    )
    return result.first()


async def _user_connection(
    session: AsyncSession, user_id: int, provider: OAuthProviderEnum
) -> Optional[OAuthConnection]:
    result = await session.exec(
        select(OAuthConnection).where(
            OAuthConnection.user_id == user_id,
            OAuthConnection.provider == provider.value,
        )
    )
    return result.first()


async def _create_connection(
    session: AsyncSession, user_id: int, identity: ProviderIdentity
) -> OAuthConnection:
    """
    Insert the link. If a concurrent request inserted the same identity
    first, the unique constraint fails and the winning row is returned.
    """
    now = utc_now()
    connection = OAuthConnection(
        user_id=user_id,
        provider=identity.provider.value,
        provider_user_id=identity.provider_user_id,
        email=identity.email,
        name=identity.name,
        profile_picture=identity.picture,
        created_at=now,
        updated_at=now,
        last_used_at=now,
    )
    session.add(connection)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_connection(session, identity.provider, identity.provider_user_id)
        if existing is None:
            raise
        return existing
    await session.refresh(connection)
    return connection


async def _replace_identity(
    session: AsyncSession, current: OAuthConnection, identity: ProviderIdentity
) -> OAuthConnection:
    """
    Point the user's existing link for this provider at a new identity.
    If the identity got linked elsewhere meanwhile, that row is returned.
    """
    now = utc_now()
    current.provider_user_id = identity.provider_user_id
    current.email = identity.email
    current.name = identity.name
    current.profile_picture = identity.picture
    current.updated_at = now
    current.last_used_at = now
    session.add(current)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await get_connection(session, identity.provider, identity.provider_user_id)
        if existing is None:
            raise
        return existing
    await session.refresh(current)
    return current


async def _link_identity(session: AsyncSession, user_id: int, identity: ProviderIdentity) -> OAuthConnection:
    # One connection per provider per user
    current = await _user_connection(session, user_id, identity.provider)
    if current is not None:
        return await _replace_identity(session, current, identity)
    return await _create_connection(session, user_id, identity)


def _ensure_not_deleted(user: User) -> None:
    if user.account_status == AccountStatusEnum.DELETED.value:
        raise AccountStatusError("Account is inactive or suspended")


async def _unique_username(session: AsyncSession, identity: ProviderIdentity) -> str:
    base = (identity.email.split("@")[0] if identity.email else f"{identity.provider.value}_user")
    base = "".join(c for c in base if c.isalnum() or c == "_")[:20] or "user"
    while True:
        candidate = f"{base}_{secrets.randbelow(100000)}"
        if await get_user_by_username(session, candidate) is None:
            return candidate


async def resolve_identity(session: AsyncSession, identity: ProviderIdentity) -> User:
    """
    Resolution order: existing connection, then an account with the same
    email (linked on the spot), then a brand new account.
    """
    connection = await get_connection(session, identity.provider, identity.provider_user_id)
    if connection is not None:
        connection.last_used_at = utc_now()
        session.add(connection)
        await session.commit()
        user = await get_user_by_id(session, connection.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    if not identity.email:
        raise ValidationError(
            f"Your {identity.provider.value.capitalize()} account has no email address. "
            "Please use another sign-in method."
        )

    user = await get_user_owning_email(session, identity.email)
    if user is not None:
        _ensure_not_deleted(user)
    else:
        try:
            user = await create_user(
                session,
                username=await _unique_username(session, identity),
                email=identity.email,
                password=None,
                full_name=identity.name or identity.email,
                provider=identity.provider.value,
                provider_id=identity.provider_user_id,
                image=identity.picture,
                email_verified=identity.email_verified,
            )
        except IntegrityError:
            # Another request created the account for this email first
            await session.rollback()
            user = await get_user_owning_email(session, identity.email)
            if user is None:
                raise
            _ensure_not_deleted(user)
        else:
            app_logger.info(f"Created account {user.id} from {identity.provider.value} sign-in")

    connection = await _link_identity(session, user.id, identity)
    return await get_user_by_id(session, connection.user_id)


async def authenticate(
    session: AsyncSession,
    provider: OAuthProviderEnum,
    token: Optional[str],
    ip_address: Optional[str] = None,
) -> dict:
    identity = await verify_provider_token(provider, token)
    user = await resolve_identity(session, identity)

    # Provider sign-in skips the password but not the lock or status gates
    lock = lock_status_of(user)
    if lock.is_locked:
        raise LockedError(
            "Your account is locked. Check your email for unlock instructions.",
            extra={"locked": True, "lockedUntil": lock.locked_until, "reason": lock.reason},
        )
    if user.account_status != AccountStatusEnum.ACTIVE.value:
        raise AccountStatusError("Account is inactive or suspended")

    security_event_logger.oauth_event(provider.value, "login", user.id, ip_address)
    result = await issue_session(session, user, ip_address)
    result["success"] = True
    result["user"]["profileImage"] = user.image or identity.picture
    return result


def _connection_view(connection: OAuthConnection) -> dict:
    return {
        "id": connection.id,
        "provider": connection.provider,
        "email": connection.email,
        "name": connection.name,
        "profilePicture": connection.profile_picture,
        "createdAt": connection.created_at,
        "lastUsedAt": connection.last_used_at,
    }


async def list_connections(session: AsyncSession, user: User) -> List[dict]:
    result = await session.exec(
        select(OAuthConnection)
        .where(OAuthConnection.user_id == user.id)
        .order_by(OAuthConnection.created_at)
    )
    return [_connection_view(c) for c in result.all()]


async def connect_provider(
    session: AsyncSession,
    user: User,
    provider: OAuthProviderEnum,
    token: Optional[str],
) -> dict:
    user_id = user.id
    identity = await verify_provider_token(provider, token)
    label = provider.value.capitalize()

    existing = await get_connection(session, provider, identity.provider_user_id)
    if existing is not None:
        if existing.user_id != user_id:
            raise ConflictError(f"This {label} account is already connected to another user")
        raise ConflictError(f"This {label} account is already connected to your account")

    connection = await _link_identity(session, user_id, identity)
    if connection.user_id != user_id:
        raise ConflictError(f"This {label} account is already connected to another user")

    security_event_logger.oauth_event(provider.value, "connect", user_id)
    return {"success": True, "message": f"{label} account connected successfully"}


async def disconnect_provider(session: AsyncSession, user: User, provider: OAuthProviderEnum) -> dict:
    user_id = user.id
    result = await session.exec(
        delete(OAuthConnection).where(
            OAuthConnection.user_id == user_id,
            OAuthConnection.provider == provider.value,
        )
    )
    await session.commit()
    if not result.rowcount:
        raise NotFoundError(f"No {provider.value} connection found for this user")

    security_event_logger.oauth_event(provider.value, "disconnect", user_id)
    return {"success": True, "message": f"{provider.value.capitalize()} account disconnected"}
