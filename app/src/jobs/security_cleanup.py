from datetime import timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from app.core.database import async_session_maker, utc_now
from app.core.logging import app_logger
from app.core.settings import settings
from app.src.services.email_codes import cleanup_expired_codes
from app.src.services.login_attempts import purge_login_attempts
from app.src.services.unlock_tokens import cleanup_expired_tokens

scheduler = AsyncIOScheduler()


async def purge_security_records():
    """Drop used/expired unlock tokens and emailed codes, and login attempts past the retention period."""
    try:
        async with async_session_maker() as session:
            tokens_removed = await cleanup_expired_tokens(session)
            codes_removed = await cleanup_expired_codes(session)
            cutoff = utc_now() - timedelta(days=settings.login_attempt_retention_days)
            attempts_removed = await purge_login_attempts(session, cutoff)
        app_logger.info(
            f"Security cleanup: {tokens_removed} unlock tokens, {codes_removed} emailed codes, "
            f"{attempts_removed} login attempts removed"
        )
    except SQLAlchemyError as e:
        app_logger.error(f"Security cleanup failed: {e}")


def start_scheduler():
    scheduler.add_job(
        func=purge_security_records,
        trigger="interval",
        minutes=settings.cleanup_interval_minutes,
        id="security_cleanup",
        replace_existing=True,
    )
    scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown()
