from datetime import timedelta

from app.core.database import utc_now
from app.src.jobs import security_cleanup
from app.src.models.login_attempts import LoginAttempt
from app.src.services.lockout import lock_account
from app.src.services.login_attempts import consecutive_failures
from app.src.services.unlock_tokens import generate_unlock_token, verify_unlock_token
from app.src.services.users import get_user_by_primary_email


async def test_purge_security_records(session, session_maker, monkeypatch):
    """The housekeeping job drops used tokens and stale attempts only"""
    user = await get_user_by_primary_email(session, "student@example.com")
    await lock_account(session, user.id, "test")
    await generate_unlock_token(session, user.id, None)
    live = await generate_unlock_token(session, user.id, None)
    session.add(LoginAttempt(
        ip_address="10.0.0.1", email="old@example.com", attempted_at=utc_now() - timedelta(days=365)
    ))
    session.add(LoginAttempt(ip_address="10.0.0.1", email="recent@example.com"))
    await session.commit()

    monkeypatch.setattr(security_cleanup, "async_session_maker", session_maker)
    await security_cleanup.purge_security_records()

    assert (await verify_unlock_token(session, live.unlock_token)).valid is True
    assert await consecutive_failures(session, "old@example.com", 5) == 0
    assert await consecutive_failures(session, "recent@example.com", 5) == 1


def test_start_and_stop_scheduler(monkeypatch):
    started = []
    monkeypatch.setattr(security_cleanup.scheduler, "start", lambda: started.append(True))

    security_cleanup.start_scheduler()

    assert started == [True]
    assert security_cleanup.scheduler.get_job("security_cleanup") is not None
    security_cleanup.scheduler.remove_job("security_cleanup")
