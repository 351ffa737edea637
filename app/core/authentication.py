from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import select

from app.core.database import SessionDep
from app.core.error_handling import TokenError
from app.core.settings import settings
from app.src.models.users import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# Compared against when the email is unknown so that the response time does
# not reveal whether an account exists.
DUMMY_PASSWORD_HASH = pwd_context.hash("dummy-password-for-timing")


def get_password_hash(password: str):
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]):
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Not a bcrypt hash (e.g. OAuth-only accounts)
        return False


def _encode(payload: dict, expires_delta: timedelta) -> tuple[str, datetime]:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = payload.copy()
    to_encode.update({"exp": expire, "iat": datetime.now(timezone.utc)})
    encoded_jwt = jwt.encode(
        to_encode, settings.secret_key, algorithm=settings.algorithm
    )
    return encoded_jwt, expire


def create_access_token(user: User, expires_delta: Optional[timedelta] = None):
    if user.id is None:
        raise ValueError("Token subject must be a persisted user")
    encoded_jwt, expire = _encode(
        {"sub": str(user.id), "role": user.role, "token_type": "access"},
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes),
    )
    expire_string = expire.strftime("%Y-%m-%d %H:%M:%S")
    return {"access_token": encoded_jwt, "expires": expire_string}


def create_refresh_token(user: User) -> str:
    """
    Long-lived signed token exchanged at /auth/refresh-token for a new access token.
    """
    encoded_jwt, _ = _encode(
        {"sub": str(user.id), "token_type": "refresh"},
        timedelta(days=settings.refresh_token_expire_days),
    )
    return encoded_jwt


def create_scoped_token(purpose: str, user_id: int, minutes: int, **claims) -> str:
    """
    Short-lived correlation token for a single multi-step flow.

    purpose is one of "two_fa_challenge", "two_fa_setup" or "account_unlock";
    a token minted for one flow is rejected by every other flow.
    """
    payload = {"sub": str(user_id), "purpose": purpose, **claims}
    encoded_jwt, _ = _encode(payload, timedelta(minutes=minutes))
    return encoded_jwt


def decode_token(token: Optional[str]) -> Optional[dict]:
    if not token:
        return None
    try:
        return jwt.decode(
            token, settings.secret_key, algorithms=[settings.algorithm]
        )
    except JWTError:
        return None


def decode_scoped_token(token: Optional[str], purpose: str) -> dict:
    payload = decode_token(token)
    if payload is None or payload.get("purpose") != purpose or payload.get("sub") is None:
        raise TokenError("Invalid or expired token")
    try:
        payload["user_id"] = int(payload["sub"])
    except (TypeError, ValueError):
        raise TokenError("Invalid or expired token")
    return payload


def verify_token(token: str, token_type: str = "access") -> Optional[int]:
    payload = decode_token(token)
    if payload is None or payload.get("token_type") != token_type:
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


async def get_user(db, user_id: int) -> Optional[User]:
    result = await db.exec(select(User).where(User.id == user_id))
    return result.first()


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)], db: SessionDep
) -> User:
    user_id = verify_token(token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = await get_user(db, user_id)
    if user is None or user.account_status == "DELETED":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if user.account_status != "ACTIVE":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Account is {user.account_status.lower()}"
        )
    return user


async def get_optional_user(
    token: Annotated[Optional[str], Depends(optional_oauth2_scheme)], db: SessionDep
) -> Optional[User]:
    """Resolve the bearer user when one is present, without requiring it."""
    if not token:
        return None
    user_id = verify_token(token)
    if user_id is None:
        return None
    user = await get_user(db, user_id)
    if user is None or user.account_status != "ACTIVE":
        return None
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
OptionalUser = Annotated[Optional[User], Depends(get_optional_user)]
