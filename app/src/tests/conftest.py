import os

os.environ["TESTING"] = "1"
os.environ["EMAIL_DELIVERY_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///./test_user_service.db")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import email as email_module
from app.core.database import build_engine, get_session
from app.main import app
from app.src.tests.utils import TestDatabase

client = TestClient(app)


@pytest.fixture(scope="function")
def database_file(tmp_path):
    db_file = tmp_path / "user_service_test.db"
    engine = create_engine(f"sqlite:///{db_file}")
    SQLModel.metadata.create_all(engine)
    TestDatabase(engine).populate_test_data()
    engine.dispose()
    return db_file


@pytest.fixture
def test_db(database_file):
    engine = create_engine(f"sqlite:///{database_file}")
    yield TestDatabase(engine)
    engine.dispose()


@pytest.fixture
def session_maker(database_file):
    engine = build_engine(f"sqlite+aiosqlite:///{database_file}")
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def api_client(session_maker):
    async def override_get_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing notifications instead of talking to SMTP."""
    outbox = []
    monkeypatch.setattr(email_module, "_deliver", outbox.append)
    return outbox
