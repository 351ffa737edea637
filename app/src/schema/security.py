"""
Structured results returned by the security services.

Expected business outcomes (blocked, locked, invalid token) are reported
through these objects; only infrastructure failures raise.
"""

from datetime import datetime
from typing import Union
from pydantic import BaseModel


class IPBlockStatus(BaseModel):
    is_blocked: bool
    failed_count: int
    max_attempts: int
    time_window: int


class AccountLockCheck(BaseModel):
    should_lock: bool
    failed_count: int
    max_attempts: int


class LockStatus(BaseModel):
    is_locked: bool
    locked_until: Union[datetime, None] = None
    reason: Union[str, None] = None


class LockResult(BaseModel):
    locked: bool
    locked_until: datetime
    duration: int


class UnlockTokenIssue(BaseModel):
    token_id: int
    unlock_token: str
    email_token: str
    expires_at: datetime


class UnlockTokenCheck(BaseModel):
    valid: bool
    token_id: Union[int, None] = None
    user_id: Union[int, None] = None
    email_token: Union[str, None] = None
    reason: Union[str, None] = None
