from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.core.database import utc_now


class AccountUnlockToken(SQLModel, table=True):
    """
    Single-use, time-limited capability that drives the account unlock flow.

    unlock_token travels in the emailed link, email_token is the value the
    email-verification step consumes. is_used only ever goes False -> True.
    """

    __tablename__ = "account_unlock_tokens"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    unlock_token: str = Field(index=True, unique=True, max_length=128)
    email_token: str = Field(index=True, unique=True, max_length=128)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
    is_used: bool = Field(default=False, index=True)
    used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    email_verified: bool = Field(default=False)
    email_verified_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
