from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from app.core.database import utc_now
from app.src.models.login_attempts import LoginAttempt
from app.src.services.lockout import (
    LOCKOUT_DURATION_MINUTES,
    MAX_FAILED_ATTEMPTS,
    check_account_locking,
    check_ip_blocking,
    is_account_locked,
    lock_account,
    unlock_account,
)
from app.src.services.login_attempts import (
    consecutive_failures,
    count_failures_in_window,
    purge_login_attempts,
    record_login_attempt,
)
from app.src.services.users import get_user_by_primary_email


async def _fail(session, email, ip="10.0.0.1", times=1):
    for _ in range(times):
        await record_login_attempt(session, ip, email, None, False, None, "Invalid password")


async def test_record_login_attempt_normalizes_email(session):
    attempt = await record_login_attempt(
        session, "10.0.0.1", "  Student@Example.COM ", None, False, "pytest", "Invalid password"
    )

    assert attempt.id is not None
    assert attempt.email == "student@example.com"
    assert attempt.failure_reason == "Invalid password"


async def test_record_login_attempt_never_raises(session, monkeypatch):
    """A ledger write failure is logged and swallowed"""
    async def broken_commit():
        raise SQLAlchemyError("database is gone")

    monkeypatch.setattr(session, "commit", broken_commit)

    result = await record_login_attempt(session, "10.0.0.1", "student@example.com", None, False)

    assert result is None


async def test_ip_block_threshold(session):
    """Five failures inside the window block the address, four do not"""
    await _fail(session, "a@example.com", times=MAX_FAILED_ATTEMPTS - 1)
    status = await check_ip_blocking(session, "10.0.0.1")
    assert status.is_blocked is False
    assert status.failed_count == MAX_FAILED_ATTEMPTS - 1

    await _fail(session, "b@example.com")
    status = await check_ip_blocking(session, "10.0.0.1")
    assert status.is_blocked is True

    other = await check_ip_blocking(session, "10.0.0.2")
    assert other.is_blocked is False


async def test_ip_block_ignores_failures_outside_window(session):
    old = utc_now() - timedelta(minutes=30)
    for _ in range(MAX_FAILED_ATTEMPTS):
        session.add(LoginAttempt(ip_address="10.0.0.9", email="x@example.com", attempted_at=old))
    await session.commit()

    assert await count_failures_in_window(session, "10.0.0.9", 15) == 0
    assert (await check_ip_blocking(session, "10.0.0.9")).is_blocked is False


async def test_success_resets_consecutive_failures(session):
    """4 failures, a success, then 4 more failures must not lock"""
    email = "student@example.com"
    await _fail(session, email, times=4)
    await record_login_attempt(session, "10.0.0.1", email, 1, True)
    await _fail(session, email, times=4)

    check = await check_account_locking(session, email)
    assert check.should_lock is False
    assert check.failed_count == 4

    await _fail(session, email)
    check = await check_account_locking(session, email)
    assert check.should_lock is True
    assert check.failed_count == MAX_FAILED_ATTEMPTS


async def test_consecutive_failures_only_inspects_newest_rows(session):
    email = "student@example.com"
    await _fail(session, email, times=8)

    assert await consecutive_failures(session, email, 5) == 5
    assert await consecutive_failures(session, "nobody@example.com", 5) == 0


async def test_lock_account_sets_fields(session):
    user = await get_user_by_primary_email(session, "student@example.com")

    result = await lock_account(session, user.id, "Too many failed login attempts (5)")

    assert result.locked is True
    assert result.duration == LOCKOUT_DURATION_MINUTES
    await session.refresh(user)
    assert user.account_status == "LOCKED"
    assert user.require_two_fa is True
    assert user.lock_reason == "Too many failed login attempts (5)"


async def test_lock_does_not_expire_on_its_own(session):
    """locked_until in the past still reports the account as locked"""
    user = await get_user_by_primary_email(session, "student@example.com")
    await lock_account(session, user.id, "test")
    user.locked_until = utc_now() - timedelta(hours=1)
    session.add(user)
    await session.commit()

    status = await is_account_locked(session, user.id)

    assert status.is_locked is True
    assert status.reason == "test"


async def test_unlock_account_clears_lock_and_requires_two_fa(session):
    user = await get_user_by_primary_email(session, "student@example.com")
    await lock_account(session, user.id, "test")

    await unlock_account(session, user.id)

    status = await is_account_locked(session, user.id)
    assert status.is_locked is False
    await session.refresh(user)
    assert user.account_status == "ACTIVE"
    assert user.locked_until is None
    assert user.require_two_fa is True


async def test_is_account_locked_unknown_user(session):
    status = await is_account_locked(session, 9999)

    assert status.is_locked is False


async def test_purge_login_attempts(session):
    session.add(LoginAttempt(
        ip_address="10.0.0.1", email="old@example.com", attempted_at=utc_now() - timedelta(days=120)
    ))
    await session.commit()
    await _fail(session, "new@example.com")

    removed = await purge_login_attempts(session, utc_now() - timedelta(days=90))

    assert removed == 1
    assert await consecutive_failures(session, "new@example.com", 5) == 1
