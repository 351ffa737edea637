from datetime import date, datetime
from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.core.database import utc_now


class User(SQLModel, table=True):
    """
    Identity, credential and security state of a platform account.

    account_status moves ACTIVE <-> LOCKED only through the lockout and unlock
    services; DELETED is a soft-delete marker and the row is retained.
    """

    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True, max_length=30)
    email: Optional[str] = Field(default=None, index=True, unique=True)
    password: str
    full_name: str
    date_of_birth: Optional[date] = None
    school: Optional[str] = None
    role: str = Field(default="STUDENT", index=True)
    status: str = Field(default="OFFLINE")
    account_status: str = Field(default="ACTIVE", index=True)
    provider: str = Field(default="local")
    provider_id: Optional[str] = None
    image: Optional[str] = None
    email_verified: bool = Field(default=False)
    has_passkey: bool = Field(default=False)
    # Lockout fields
    lock_reason: Optional[str] = None
    lock_duration: Optional[int] = None
    locked_until: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    # Two-factor fields
    two_fa_enabled: bool = Field(default=False)
    require_two_fa: bool = Field(default=False)
    two_fa_secret: Optional[str] = Field(default=None, max_length=64)
    last_login_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_login_ip: Optional[str] = Field(default=None, max_length=45)
    deleted_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
