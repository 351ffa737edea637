"""
Login attempt ledger.

Every authentication attempt is appended here; the IP block and the account
lock are both derived from these rows.
"""

from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.database import utc_now
from app.core.logging import database_logger, security_event_logger
from app.src.models.login_attempts import LoginAttempt


async def record_login_attempt(
    session: AsyncSession,
    ip_address: str,
    email: str,
    user_id: Optional[int],
    success: bool,
    user_agent: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> Optional[LoginAttempt]:
    """
    Append one attempt to the ledger. Best-effort: a storage failure is logged
    and the session rolled back, but never raised to the caller.
    """
    attempt = LoginAttempt(
        ip_address=ip_address or "unknown",
        email=(email or "").strip().lower(),
        user_id=user_id,
        is_successful=success,
        user_agent=user_agent[:512] if user_agent else None,
        failure_reason=failure_reason[:500] if failure_reason else None,
    )
    try:
        session.add(attempt)
        await session.commit()
    except SQLAlchemyError as e:
        database_logger.error(f"Failed to record login attempt for {email}: {e}")
        await session.rollback()
        return None

    security_event_logger.login_attempt(
        user_id=user_id,
        email=attempt.email,
        success=success,
        client_ip=attempt.ip_address,
        user_agent=user_agent,
        failure_reason=failure_reason,
    )
    return attempt


async def count_failures_in_window(session: AsyncSession, ip_address: str, window_minutes: int) -> int:
    since = utc_now() - timedelta(minutes=window_minutes)
    result = await session.exec(
        select(func.count(LoginAttempt.id)).where(
            LoginAttempt.ip_address == ip_address,
            LoginAttempt.is_successful.is_(False),
            LoginAttempt.attempted_at > since,
        )
    )
    return result.one()


async def consecutive_failures(session: AsyncSession, email: str, max_to_inspect: int) -> int:
    """
    Count failures at the head of the email's history, newest first, stopping
    at the first success. Only the newest max_to_inspect rows are considered.
    """
    result = await session.exec(
        select(LoginAttempt.is_successful)
        .where(LoginAttempt.email == (email or "").strip().lower())
        .order_by(LoginAttempt.attempted_at.desc(), LoginAttempt.id.desc())
        .limit(max_to_inspect)
    )
    count = 0
    for is_successful in result.all():
        if is_successful:
            break
        count += 1
    return count


async def purge_login_attempts(session: AsyncSession, older_than: datetime) -> int:
    result = await session.exec(
        delete(LoginAttempt)
        .where(LoginAttempt.attempted_at < older_than)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0
