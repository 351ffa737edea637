from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.core.database import utc_now


class EmailCodeBase(SQLModel):
    """
    Short numeric code mailed to the account owner.

    At most one unused code per user is outstanding; issuing a new one deletes
    the rest. A code is spent once is_used is set or attempt_count reaches the cap.
    """

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    code: str = Field(max_length=12)
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
    attempt_count: int = Field(default=0)
    is_used: bool = Field(default=False, index=True)
    used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class PasswordReset(EmailCodeBase, table=True):
    __tablename__ = "password_resets"


class LoginOtp(EmailCodeBase, table=True):
    __tablename__ = "login_otps"
