"""
Models package for the user service.
Exports all database models.
"""

from app.src.models.email_codes import LoginOtp, PasswordReset
from app.src.models.login_attempts import LoginAttempt
from app.src.models.oauth_connections import OAuthConnection
from app.src.models.unlock_tokens import AccountUnlockToken
from app.src.models.user_emails import UserEmail
from app.src.models.users import User

__all__ = [
    "User",
    "UserEmail",
    "LoginAttempt",
    "AccountUnlockToken",
    "OAuthConnection",
    "PasswordReset",
    "LoginOtp",
]
