from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime, Index
from sqlmodel import Field, SQLModel

from app.core.database import utc_now


class LoginAttempt(SQLModel, table=True):
    """
    Append-only record of every authentication attempt.

    Failed-attempt counters are derived from this table rather than stored on
    the user row. Rows are only ever removed by the retention job.
    """

    __tablename__ = "login_attempts"
    __table_args__ = (
        Index("ix_login_attempts_ip_attempted", "ip_address", "attempted_at"),
        Index("ix_login_attempts_email_attempted", "email", "attempted_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    ip_address: str = Field(max_length=45)
    email: str = Field(max_length=255)
    user_id: Optional[int] = Field(default=None, foreign_key="users.id")
    is_successful: bool = Field(default=False)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    failure_reason: Optional[str] = Field(default=None, max_length=500)
    attempted_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
