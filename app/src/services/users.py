from datetime import date
from typing import Optional
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.authentication import get_password_hash
from app.core.database import utc_now
from app.src.models.user_emails import UserEmail
from app.src.models.users import User
from app.src.schema.users import AccountStatusEnum, PresenceStatusEnum


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    result = await session.exec(select(User).where(User.id == user_id))
    return result.first()


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    result = await session.exec(select(User).where(User.username == username))
    return result.first()


async def get_user_by_primary_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.exec(
        select(User).where(
            User.email == normalize_email(email),
            User.account_status != AccountStatusEnum.DELETED.value,
        )
    )
    return result.first()


async def get_user_owning_email(session: AsyncSession, email: str) -> Optional[User]:
    """Primary-email lookup that also returns soft-deleted accounts, which keep their address."""
    result = await session.exec(select(User).where(User.email == normalize_email(email)))
    return result.first()


async def get_user_by_verified_secondary_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.exec(
        select(User)
        .join(UserEmail, UserEmail.user_id == User.id)
        .where(
            UserEmail.email == normalize_email(email),
            UserEmail.is_verified.is_(True),
            User.account_status != AccountStatusEnum.DELETED.value,
        )
    )
    return result.first()


async def resolve_login_email(session: AsyncSession, email: str) -> Optional[User]:
    """
    Find the account a login email belongs to.

    The primary address wins; a verified secondary address is the fallback.
    Soft-deleted accounts never resolve.
    """
    user = await get_user_by_primary_email(session, email)
    if user is None:
        user = await get_user_by_verified_secondary_email(session, email)
    return user


async def email_in_use(session: AsyncSession, email: str) -> bool:
    email = normalize_email(email)
    result = await session.exec(select(User.id).where(User.email == email))
    if result.first() is not None:
        return True
    result = await session.exec(select(UserEmail.id).where(UserEmail.email == email))
    return result.first() is not None


async def create_user(
    session: AsyncSession,
    username: str,
    email: str,
    password: Optional[str],
    full_name: str,
    date_of_birth: Optional[date] = None,
    school: Optional[str] = None,
    provider: str = "local",
    provider_id: Optional[str] = None,
    image: Optional[str] = None,
    email_verified: bool = False,
) -> User:
    user = User(
        username=username,
        email=normalize_email(email),
        # OAuth-only accounts get an unusable password
        password=get_password_hash(password) if password else "!",
        full_name=full_name,
        date_of_birth=date_of_birth,
        school=school,
        provider=provider,
        provider_id=provider_id,
        image=image,
        email_verified=email_verified,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def record_successful_login(session: AsyncSession, user: User, ip_address: Optional[str]) -> User:
    now = utc_now()
    user.last_login_at = now
    user.last_login_ip = ip_address
    user.status = PresenceStatusEnum.ONLINE.value
    user.updated_at = now
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def set_offline(session: AsyncSession, user: User) -> None:
    user.status = PresenceStatusEnum.OFFLINE.value
    user.updated_at = utc_now()
    session.add(user)
    await session.commit()


def public_user(user: User, full: bool = False) -> dict:
    data = {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "fullName": user.full_name,
    }
    if full:
        data.update({
            "role": user.role,
            "hasPasskey": user.has_passkey,
        })
    return data
