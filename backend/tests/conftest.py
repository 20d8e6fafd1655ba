"""
Shared fixtures: in-memory SQLite store, API client, bearer tokens, chats.
"""

import os

# Settings are read once at import time, so the environment goes first.
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.security import create_access_token  # noqa: E402
from app.crud import chat as chat_crud  # noqa: E402
from app.database.connection import Base, SessionLocal, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.schemas.chat import ChatCreateRequest  # noqa: E402

OWNER_ID = "user-alice"
OTHER_OWNER_ID = "user-bob"


@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test"""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def _auth_headers(owner_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(owner_id)}"}


@pytest.fixture
def auth_headers():
    return _auth_headers(OWNER_ID)


@pytest.fixture
def other_auth_headers():
    return _auth_headers(OTHER_OWNER_ID)


@pytest.fixture
def make_chat(db_session):
    """Create a chat directly in the store, owned by OWNER_ID unless told otherwise"""

    def _make(owner_id: str = OWNER_ID, **fields):
        return chat_crud.create_chat(db_session, ChatCreateRequest(**fields), owner_id)

    return _make


@pytest.fixture
def chat(make_chat):
    return make_chat(title="Original title")
