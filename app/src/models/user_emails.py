from datetime import datetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.core.database import utc_now


class UserEmail(SQLModel, table=True):
    """Secondary addresses attached to an account. Only verified rows can be used to log in."""

    __tablename__ = "user_emails"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    email: str = Field(index=True, unique=True)
    is_verified: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
