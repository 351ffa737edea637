from typing import List, Optional

import pyotp
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.core.authentication import create_access_token, get_password_hash
from app.src.models.login_attempts import LoginAttempt
from app.src.models.oauth_connections import OAuthConnection
from app.src.models.unlock_tokens import AccountUnlockToken
from app.src.models.user_emails import UserEmail
from app.src.models.users import User

TEST_PASSWORD = "secret1"
TOTP_SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"


class TestDatabase:
    """Seeds the test database and reads state back with a fresh session per call."""

    __test__ = False

    def __init__(self, engine: Engine):
        self.engine = engine

    def populate_test_data(self):
        password_hash = get_password_hash(TEST_PASSWORD)
        with Session(self.engine) as session:
            student = User(
                username="student",
                email="student@example.com",
                password=password_hash,
                full_name="Student User",
            )
            two_fa_user = User(
                username="secure",
                email="secure@example.com",
                password=password_hash,
                full_name="Secure User",
                two_fa_enabled=True,
                two_fa_secret=TOTP_SECRET,
            )
            suspended = User(
                username="suspended",
                email="suspended@example.com",
                password=password_hash,
                full_name="Suspended User",
                account_status="SUSPENDED",
            )
            session.add_all([student, two_fa_user, suspended])
            session.commit()
            session.refresh(student)
            session.add(UserEmail(user_id=student.id, email="student.alt@example.com", is_verified=True))
            session.add(UserEmail(user_id=student.id, email="student.unverified@example.com"))
            session.commit()

    def get_user(self, email: str) -> Optional[User]:
        with Session(self.engine) as session:
            return session.exec(select(User).where(User.email == email)).first()

    def unlock_tokens(self, user_id: int) -> List[AccountUnlockToken]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(AccountUnlockToken)
                .where(AccountUnlockToken.user_id == user_id)
                .order_by(AccountUnlockToken.id)
            ).all())

    def login_attempts(self, email: str) -> List[LoginAttempt]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(LoginAttempt)
                .where(LoginAttempt.email == email)
                .order_by(LoginAttempt.id)
            ).all())

    def oauth_connections(self) -> List[OAuthConnection]:
        with Session(self.engine) as session:
            return list(session.exec(select(OAuthConnection)).all())

    def update_user(self, email: str, **fields) -> None:
        with Session(self.engine) as session:
            user = session.exec(select(User).where(User.email == email)).first()
            for key, value in fields.items():
                setattr(user, key, value)
            session.add(user)
            session.commit()


def auth_headers(user: User) -> dict:
    token = create_access_token(user)["access_token"]
    return {"Authorization": f"Bearer {token}"}


def current_code(secret: str = TOTP_SECRET) -> str:
    return pyotp.TOTP(secret).now()
