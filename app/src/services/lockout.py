"""
Account lockout policy.

Two independent protections derived from the login-attempt ledger:

* IP blocking: an address with MAX_FAILED_ATTEMPTS failures inside the
  trailing TIME_WINDOW_MINUTES is refused before any credential lookup.
* Account locking: MAX_FAILED_ATTEMPTS consecutive failures on an email lock
  the account for LOCKOUT_DURATION_MINUTES and force two-factor setup.

Locks never expire on their own; an account stays LOCKED until it is
unlocked through the unlock flow. locked_until is informational.
"""

from datetime import timedelta
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.database import as_utc, utc_now
from app.core.settings import settings
from app.src.models.users import User
from app.src.schema.security import AccountLockCheck, IPBlockStatus, LockResult, LockStatus
from app.src.schema.users import AccountStatusEnum
from app.src.services.login_attempts import consecutive_failures, count_failures_in_window
from app.src.services.users import get_user_by_id

MAX_FAILED_ATTEMPTS = settings.max_failed_attempts
LOCKOUT_DURATION_MINUTES = settings.lockout_duration_minutes
TIME_WINDOW_MINUTES = settings.time_window_minutes


async def check_ip_blocking(session: AsyncSession, ip_address: str) -> IPBlockStatus:
    failed_count = await count_failures_in_window(session, ip_address, TIME_WINDOW_MINUTES)
    return IPBlockStatus(
        is_blocked=failed_count >= MAX_FAILED_ATTEMPTS,
        failed_count=failed_count,
        max_attempts=MAX_FAILED_ATTEMPTS,
        time_window=TIME_WINDOW_MINUTES,
    )


async def check_account_locking(session: AsyncSession, email: str) -> AccountLockCheck:
    failed_count = await consecutive_failures(session, email, MAX_FAILED_ATTEMPTS)
    return AccountLockCheck(
        should_lock=failed_count >= MAX_FAILED_ATTEMPTS,
        failed_count=failed_count,
        max_attempts=MAX_FAILED_ATTEMPTS,
    )


async def _require_user(session: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(session, user_id)
    if user is None:
        raise LookupError(f"User {user_id} not found")
    return user


async def lock_account(session: AsyncSession, user_id: int, reason: str) -> LockResult:
    """Lock the account. Re-locking an already locked account just refreshes the lock fields."""
    user = await _require_user(session, user_id)
    now = utc_now()
    locked_until = now + timedelta(minutes=LOCKOUT_DURATION_MINUTES)

    user.account_status = AccountStatusEnum.LOCKED.value
    user.lock_reason = reason
    user.lock_duration = LOCKOUT_DURATION_MINUTES
    user.locked_until = locked_until
    user.require_two_fa = True
    user.updated_at = now
    session.add(user)
    await session.commit()

    return LockResult(locked=True, locked_until=locked_until, duration=LOCKOUT_DURATION_MINUTES)


def lock_status_of(user: User) -> LockStatus:
    if user.account_status != AccountStatusEnum.LOCKED.value:
        return LockStatus(is_locked=False)
    return LockStatus(
        is_locked=True,
        locked_until=as_utc(user.locked_until),
        reason=user.lock_reason,
    )


async def is_account_locked(session: AsyncSession, user_id: int) -> LockStatus:
    user = await get_user_by_id(session, user_id)
    if user is None:
        return LockStatus(is_locked=False)
    # Always read the stored state so a concurrent lock is visible
    await session.refresh(user)
    return lock_status_of(user)


async def unlock_account(session: AsyncSession, user_id: int) -> User:
    user = await _require_user(session, user_id)
    user.account_status = AccountStatusEnum.ACTIVE.value
    user.lock_reason = None
    user.lock_duration = None
    user.locked_until = None
    user.require_two_fa = True
    user.updated_at = utc_now()
    session.add(user)
    await session.commit()
    return user
