import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock
from fastapi import HTTPException
from jose import jwt

from app.core.authentication import (
    create_access_token,
    create_refresh_token,
    create_scoped_token,
    decode_scoped_token,
    get_current_user,
    get_optional_user,
    get_password_hash,
    get_user,
    verify_password,
    verify_token,
)
from app.core.error_handling import TokenError
from app.core.settings import settings
from app.src.models.users import User


@pytest.fixture
def mock_user():
    """Create a mock user for testing"""
    return User(
        id=1,
        username="testuser",
        email="test@example.com",
        full_name="Test User",
        password="$2b$12$NxBnVDJB/IbsFlbGIYMVOOTGk5WpQNmc.RnV31HTcXKOBr72fkrmO",
    )


@pytest.fixture
def mock_session():
    """Create a mock database session"""
    session = AsyncMock()
    return session


def _session_returning(session, user):
    mock_result = Mock()
    mock_result.first.return_value = user
    session.exec = AsyncMock(return_value=mock_result)
    return session


def test_get_password_hash():
    """Test password hashing"""
    password = "testpassword123"
    hashed = get_password_hash(password)

    assert hashed is not None
    assert isinstance(hashed, str)
    assert hashed != password
    assert hashed.startswith("$2b$")


def test_get_password_hash_same_password_produces_different_hashes():
    """Test that same password produces different hashes (due to salt)"""
    password = "testpassword"

    assert get_password_hash(password) != get_password_hash(password)


def test_verify_password_correct():
    """Test password verification with correct password"""
    hashed = get_password_hash("testpassword123")

    assert verify_password("testpassword123", hashed) is True


def test_verify_password_incorrect():
    """Test password verification with incorrect password"""
    hashed = get_password_hash("testpassword123")

    assert verify_password("wrongpassword", hashed) is False


@pytest.mark.parametrize("stored", [None, "", "!"])
def test_verify_password_unusable_hash(stored):
    """Accounts without a usable password hash never verify"""
    assert verify_password("anything", stored) is False


@pytest.mark.parametrize("password", [
    "short",
    "P@ssw0rd!#$%",
    "password with spaces",
])
def test_password_hash_and_verify_various_formats(password):
    """Test hashing and verification with various password formats"""
    hashed = get_password_hash(password)
    assert verify_password(password, hashed) is True
    assert verify_password(password + "x", hashed) is False


async def test_get_user_found(mock_session, mock_user):
    """Test getting user from database - user found"""
    _session_returning(mock_session, mock_user)

    user = await get_user(mock_session, 1)

    assert user is not None
    assert user.username == "testuser"


async def test_get_user_not_found(mock_session):
    """Test getting user from database - user not found"""
    _session_returning(mock_session, None)

    assert await get_user(mock_session, 99) is None


def test_create_access_token_claims(mock_user):
    """Access tokens carry the user id as a string subject"""
    result = create_access_token(mock_user)

    assert isinstance(result["access_token"], str)
    decoded = jwt.decode(result["access_token"], settings.secret_key, algorithms=[settings.algorithm])
    assert decoded["sub"] == "1"
    assert decoded["role"] == "STUDENT"
    assert decoded["token_type"] == "access"
    assert "exp" in decoded


def test_create_access_token_expiry_format(mock_user):
    """Test that token expiry is formatted correctly"""
    result = create_access_token(mock_user)

    parsed_time = datetime.strptime(result["expires"], "%Y-%m-%d %H:%M:%S")
    assert isinstance(parsed_time, datetime)


def test_create_access_token_unsaved_user():
    """A user without an id cannot be a token subject"""
    user = User(username="draft", email="draft@example.com", full_name="Draft", password="x")

    with pytest.raises(ValueError):
        create_access_token(user)


def test_verify_token_valid(mock_user):
    token = create_access_token(mock_user)["access_token"]

    assert verify_token(token) == 1


def test_verify_token_expired(mock_user):
    """Test verifying an expired token"""
    token = create_access_token(mock_user, timedelta(seconds=-1))["access_token"]

    assert verify_token(token) is None


def test_verify_token_rejects_wrong_type(mock_user):
    """A refresh token is not accepted where an access token is expected and vice versa"""
    refresh = create_refresh_token(mock_user)
    access = create_access_token(mock_user)["access_token"]

    assert verify_token(refresh) is None
    assert verify_token(refresh, token_type="refresh") == 1
    assert verify_token(access, token_type="refresh") is None


def test_verify_token_missing_sub():
    """Test verifying token without 'sub' field"""
    to_encode = {
        "token_type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    token = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

    assert verify_token(token) is None


def test_verify_token_malformed():
    """Test verifying malformed token"""
    for token in ["", "not.a.token", "too.short", "a" * 100]:
        assert verify_token(token) is None


def test_scoped_token_round_trip():
    token = create_scoped_token("two_fa_challenge", 7, 5, two_fa_allowed=True)

    payload = decode_scoped_token(token, "two_fa_challenge")

    assert payload["user_id"] == 7
    assert payload["two_fa_allowed"] is True


def test_scoped_token_rejected_for_other_purpose():
    """A setup token cannot be replayed as a login challenge token"""
    token = create_scoped_token("two_fa_setup", 7, 15)

    with pytest.raises(TokenError) as exc_info:
        decode_scoped_token(token, "two_fa_challenge")

    assert exc_info.value.status_code == 401


def test_scoped_token_expired():
    token = create_scoped_token("account_unlock", 7, -1)

    with pytest.raises(TokenError):
        decode_scoped_token(token, "account_unlock")


def test_access_token_is_not_a_scoped_token(mock_user):
    access = create_access_token(mock_user)["access_token"]

    with pytest.raises(TokenError):
        decode_scoped_token(access, "two_fa_setup")


async def test_get_current_user_success(mock_session, mock_user):
    """Test getting current user with valid token"""
    token = create_access_token(mock_user)["access_token"]
    _session_returning(mock_session, mock_user)

    user = await get_current_user(token, mock_session)

    assert user.username == "testuser"


async def test_get_current_user_invalid_token(mock_session):
    """Test getting current user with invalid token"""
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user("invalid.token.string", mock_session)

    assert exc_info.value.status_code == 401
    assert "Invalid authentication credentials" in exc_info.value.detail


async def test_get_current_user_user_not_found(mock_session, mock_user):
    """Test getting current user when user doesn't exist in database"""
    token = create_access_token(mock_user)["access_token"]
    _session_returning(mock_session, None)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(token, mock_session)

    assert exc_info.value.status_code == 401
    assert "User not found" in exc_info.value.detail


async def test_get_current_user_deleted(mock_session, mock_user):
    token = create_access_token(mock_user)["access_token"]
    mock_user.account_status = "DELETED"
    _session_returning(mock_session, mock_user)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(token, mock_session)

    assert exc_info.value.status_code == 401


async def test_get_current_user_locked(mock_session, mock_user):
    """A locked account keeps its token but cannot use it"""
    token = create_access_token(mock_user)["access_token"]
    mock_user.account_status = "LOCKED"
    _session_returning(mock_session, mock_user)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(token, mock_session)

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Account is locked"


async def test_get_optional_user_without_token(mock_session):
    assert await get_optional_user(None, mock_session) is None
    mock_session.exec.assert_not_called()


async def test_get_optional_user_with_token(mock_session, mock_user):
    token = create_access_token(mock_user)["access_token"]
    _session_returning(mock_session, mock_user)

    user = await get_optional_user(token, mock_session)

    assert user is mock_user
