"""
Emailed one-time codes backing password reset and passwordless login.

Each purpose has its own table but the same rules: a user holds at most one
unused code, a code is good for its lifetime and a single use, and it stops
working after email_code_max_attempts wrong guesses.
"""

import secrets
import string
from datetime import timedelta
from typing import Type, Union
from sqlalchemy import delete, or_, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.database import as_utc, utc_now
from app.core.error_handling import ValidationError
from app.core.settings import settings
from app.src.models.email_codes import LoginOtp, PasswordReset

CodeModel = Type[Union[PasswordReset, LoginOtp]]

MAX_ATTEMPTS = settings.email_code_max_attempts

CODE_INVALID = "Invalid code"
CODE_EXPIRED = "Code has expired"
CODE_USED = "Code has already been used"
CODE_TOO_MANY_ATTEMPTS = "Too many attempts. Please request a new code."


def generate_code(length: int = settings.email_code_length) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


async def issue_code(
    session: AsyncSession, model: CodeModel, user_id: int, lifetime_minutes: int
) -> str:
    """Delete the user's outstanding code, store a fresh one and return it."""
    await session.exec(
        delete(model).where(model.user_id == user_id, model.is_used.is_(False))
    )
    code = generate_code()
    session.add(model(
        user_id=user_id,
        code=code,
        expires_at=utc_now() + timedelta(minutes=lifetime_minutes),
    ))
    await session.commit()
    return code


async def _latest_code(session: AsyncSession, model: CodeModel, user_id: int):
    result = await session.exec(
        select(model).where(model.user_id == user_id).order_by(model.id.desc())
    )
    return result.first()


async def check_code(
    session: AsyncSession,
    model: CodeModel,
    user_id: int,
    code: str,
    consume: bool = True,
):
    """
    Validate code against the user's latest code of this kind.

    A wrong guess counts against the outstanding code. With consume=False the
    code stays usable, but the check itself still counts as an attempt.

    Raises:
        ValidationError: invalid, used, expired or out of attempts
    """
    code = (code or "").strip()
    row = await _latest_code(session, model, user_id)

    if row is None or not secrets.compare_digest(row.code.encode(), code.encode()):
        if row is not None and not row.is_used:
            row.attempt_count += 1
            session.add(row)
            await session.commit()
        raise ValidationError(CODE_INVALID)
    if row.is_used:
        raise ValidationError(CODE_USED)
    if as_utc(row.expires_at) <= utc_now():
        raise ValidationError(CODE_EXPIRED)
    if row.attempt_count >= MAX_ATTEMPTS:
        raise ValidationError(CODE_TOO_MANY_ATTEMPTS)

    if not consume:
        row.attempt_count += 1
        session.add(row)
        await session.commit()
        return row

    # Only one submission can flip is_used
    result = await session.exec(
        update(model)
        .where(model.id == row.id, model.is_used.is_(False))
        .values(is_used=True, used_at=utc_now())
    )
    await session.commit()
    if not result.rowcount:
        raise ValidationError(CODE_USED)
    return row


async def cleanup_expired_codes(session: AsyncSession) -> int:
    removed = 0
    for model in (PasswordReset, LoginOtp):
        result = await session.exec(
            delete(model)
            .where(or_(model.expires_at < utc_now(), model.is_used.is_(True)))
            .execution_options(synchronize_session=False)
        )
        removed += result.rowcount or 0
    await session.commit()
    return removed
