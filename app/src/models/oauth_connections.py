from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.database import utc_now


class OAuthConnection(SQLModel, table=True):
    """Link between a local account and an external identity (one identity, one account)."""

    __tablename__ = "user_oauth_connections"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_oauth_provider_user"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    provider: str = Field(max_length=20, index=True)
    provider_user_id: str = Field(max_length=255)
    email: Optional[str] = None
    name: Optional[str] = None
    profile_picture: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    last_used_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
