import pytest
from datetime import timedelta
from sqlmodel import select

from app.core.authentication import create_scoped_token
from app.core.database import utc_now
from app.core.error_handling import (
    EmailDeliveryError,
    InfrastructureError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from app.src.models.unlock_tokens import AccountUnlockToken
from app.src.services import unlock_tokens
from app.src.services.lockout import lock_account
from app.src.services.unlock_tokens import (
    TOKEN_EXPIRED,
    TOKEN_NOT_FOUND,
    TOKEN_USED,
    cleanup_expired_tokens,
    describe_unlock_token,
    generate_unlock_token,
    get_lock_status,
    request_new_unlock_email,
    use_unlock_token,
    verify_email_token,
    verify_two_fa_unlock,
    verify_unlock_token,
)
from app.src.services.users import get_user_by_primary_email
from app.src.tests.utils import current_code


async def _locked(session, email):
    user = await get_user_by_primary_email(session, email)
    await lock_account(session, user.id, "Too many failed login attempts (5)")
    return user


async def test_generate_unlock_token(session):
    user = await _locked(session, "student@example.com")

    issued = await generate_unlock_token(session, user.id, "10.0.0.1")

    assert issued.unlock_token != issued.email_token
    assert len(issued.unlock_token) >= 32
    delta = issued.expires_at - utc_now()
    assert timedelta(hours=23, minutes=59) < delta <= timedelta(hours=24)

    check = await verify_unlock_token(session, issued.unlock_token)
    assert check.valid is True
    assert check.user_id == user.id
    assert check.email_token == issued.email_token


async def test_used_token_is_rejected(session):
    """A consumed token never validates again"""
    user = await _locked(session, "student@example.com")
    issued = await generate_unlock_token(session, user.id, None)

    await use_unlock_token(session, issued.token_id)
    # second use is a no-op
    await use_unlock_token(session, issued.token_id)

    check = await verify_unlock_token(session, issued.unlock_token)
    assert check.valid is False
    assert check.reason == TOKEN_USED


async def test_new_token_supersedes_previous(session):
    user = await _locked(session, "student@example.com")
    first = await generate_unlock_token(session, user.id, None)
    second = await generate_unlock_token(session, user.id, None)

    assert (await verify_unlock_token(session, first.unlock_token)).valid is False
    assert (await verify_unlock_token(session, second.unlock_token)).valid is True


async def test_unknown_and_expired_tokens(session):
    user = await _locked(session, "student@example.com")
    issued = await generate_unlock_token(session, user.id, None)

    result = await session.exec(select(AccountUnlockToken).where(AccountUnlockToken.id == issued.token_id))
    row = result.first()
    row.expires_at = utc_now() - timedelta(minutes=1)
    session.add(row)
    await session.commit()

    assert (await verify_unlock_token(session, "does-not-exist")).reason == TOKEN_NOT_FOUND
    assert (await verify_unlock_token(session, issued.unlock_token)).reason == TOKEN_EXPIRED


async def test_describe_unlock_token(session):
    user = await _locked(session, "secure@example.com")
    issued = await generate_unlock_token(session, user.id, None)

    result = await describe_unlock_token(session, issued.unlock_token)

    assert result["emailToken"] == issued.email_token
    assert result["requiresTwoFA"] is True
    assert result["user"]["email"] == "secure@example.com"


async def test_describe_unlock_token_requires_locked_account(session):
    user = await get_user_by_primary_email(session, "student@example.com")
    issued = await generate_unlock_token(session, user.id, None)

    with pytest.raises(ValidationError) as exc_info:
        await describe_unlock_token(session, issued.unlock_token)

    assert exc_info.value.detail == "Account is not locked"


async def test_describe_invalid_token(session):
    with pytest.raises(TokenError) as exc_info:
        await describe_unlock_token(session, "nope")

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == TOKEN_NOT_FOUND


async def test_email_stage_unlocks_account_without_two_fa(session, sent_emails):
    user = await _locked(session, "student@example.com")
    issued = await generate_unlock_token(session, user.id, None)

    result = await verify_email_token(session, issued.email_token, "10.0.0.1")

    assert result["unlocked"] is True
    assert result["requiresTwoFA"] is False
    await session.refresh(user)
    assert user.account_status == "ACTIVE"
    assert user.require_two_fa is True
    assert (await verify_unlock_token(session, issued.unlock_token)).reason == TOKEN_USED
    assert sent_emails[-1]["To"] == "student@example.com"
    assert "unlocked" in sent_emails[-1]["Subject"]


async def test_two_fa_account_needs_both_stages(session, sent_emails):
    user = await _locked(session, "secure@example.com")
    issued = await generate_unlock_token(session, user.id, None)

    stage_a = await verify_email_token(session, issued.email_token)
    assert stage_a["requiresTwoFA"] is True
    assert stage_a["emailVerified"] is True
    await session.refresh(user)
    assert user.account_status == "LOCKED"

    with pytest.raises(ValidationError):
        await verify_two_fa_unlock(session, "000000", stage_a["tempToken"])

    result = await verify_two_fa_unlock(session, current_code(), stage_a["tempToken"])
    assert result["unlocked"] is True
    await session.refresh(user)
    assert user.account_status == "ACTIVE"

    # The intermediate token dies with the unlock token row
    with pytest.raises(TokenError):
        await verify_two_fa_unlock(session, current_code(), stage_a["tempToken"])


async def test_two_fa_stage_rejects_expired_unlock_token(session):
    """The unlock token row must still be live when the second stage completes"""
    user = await _locked(session, "secure@example.com")
    issued = await generate_unlock_token(session, user.id, None)
    stage_a = await verify_email_token(session, issued.email_token)

    result = await session.exec(
        select(AccountUnlockToken).where(AccountUnlockToken.id == issued.token_id)
    )
    row = result.first()
    row.expires_at = utc_now() - timedelta(minutes=1)
    session.add(row)
    await session.commit()

    with pytest.raises(TokenError) as exc_info:
        await verify_two_fa_unlock(session, current_code(), stage_a["tempToken"])

    assert exc_info.value.detail == TOKEN_EXPIRED
    await session.refresh(user)
    assert user.account_status == "LOCKED"


async def test_two_fa_stage_rejects_unverified_session(session):
    user = await _locked(session, "secure@example.com")
    issued = await generate_unlock_token(session, user.id, None)
    forged = create_scoped_token(
        "account_unlock", user.id, 10, token_id=issued.token_id, email_verified=True
    )

    with pytest.raises(TokenError):
        await verify_two_fa_unlock(session, current_code(), forged)


async def test_two_fa_stage_rejects_other_purpose_token(session):
    user = await _locked(session, "secure@example.com")
    setup_token = create_scoped_token("two_fa_setup", user.id, 15)

    with pytest.raises(TokenError):
        await verify_two_fa_unlock(session, current_code(), setup_token)


async def test_request_new_unlock_email(session, sent_emails):
    user = await _locked(session, "student@example.com")
    first = await generate_unlock_token(session, user.id, None)

    result = await request_new_unlock_email(session, "Student@Example.com", "10.0.0.1")

    assert result["emailSent"] is True
    assert result["lockDuration"] == 30
    assert (await verify_unlock_token(session, first.unlock_token)).valid is False
    assert "locked" in sent_emails[-1]["Subject"]


async def test_request_new_unlock_email_errors(session, monkeypatch):
    with pytest.raises(NotFoundError):
        await request_new_unlock_email(session, "ghost@example.com")
    with pytest.raises(ValidationError):
        await request_new_unlock_email(session, "student@example.com")

    await _locked(session, "student@example.com")

    async def failing_send(*args, **kwargs):
        raise EmailDeliveryError("smtp down")

    monkeypatch.setattr(unlock_tokens, "send_account_locked_email", failing_send)
    with pytest.raises(InfrastructureError):
        await request_new_unlock_email(session, "student@example.com")


async def test_get_lock_status(session):
    status = await get_lock_status(session, "student@example.com")
    assert status["isLocked"] is False

    await _locked(session, "student@example.com")
    status = await get_lock_status(session, "student@example.com")
    assert status["isLocked"] is True
    assert status["canRequestUnlock"] is True
    assert status["lockedUntil"] is not None

    with pytest.raises(NotFoundError):
        await get_lock_status(session, "ghost@example.com")


async def test_cleanup_expired_tokens(session):
    user = await _locked(session, "student@example.com")
    await generate_unlock_token(session, user.id, None)
    live = await generate_unlock_token(session, user.id, None)

    removed = await cleanup_expired_tokens(session)

    assert removed == 1
    assert (await verify_unlock_token(session, live.unlock_token)).valid is True
