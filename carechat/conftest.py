"""
Pytest configuration and shared fixtures.

Environment defaults are set before any app import so that Settings can be
built without a .env file. Every test gets its own SQLite database file.
"""

import os
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./carechat-test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("AUTH_SECRET", "test-auth-secret")

# Clear settings cache before any app imports to ensure test env vars are used
from carechat.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from carechat.auth import Caller, Role  # noqa: E402
from carechat.main import create_app  # noqa: E402
from carechat.models import User  # noqa: E402
from carechat.utils import sign_user_token  # noqa: E402

TEST_AUTH_SECRET = os.environ["AUTH_SECRET"]

SEED_USERS = [
    (1, "Alice Admin", "alice@hospital.test", "Admin"),
    (2, "Bob Nurse", "bob@hospital.test", "Nurse"),
    (3, "Carol Doctor", "carol@hospital.test", "Doctor"),
    (4, "Dan Nurse", "dan@hospital.test", "Nurse"),
    (5, "Eve User", "eve@hospital.test", "User"),
]


def auth_headers(user_id: int) -> dict:
    """Authorization header for a seeded user."""
    return {"Authorization": f"Bearer {sign_user_token(user_id, TEST_AUTH_SECRET)}"}


def caller_for(user_id: int) -> Caller:
    """Caller identity matching a seeded user, for service-level tests."""
    for uid, name, email, role in SEED_USERS:
        if uid == user_id:
            return Caller(id=uid, name=name, email=email, role=Role(role))
    raise KeyError(user_id)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'carechat.db'}",
        LOG_LEVEL="WARNING",
        AUTH_SECRET=TEST_AUTH_SECRET,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture(scope="function")
def client(app):
    """Create test client; the app lifespan creates the tables."""
    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    app.state.store.drop_all()


@pytest.fixture
def store(app, client):
    return app.state.store


@pytest.fixture
def users(store):
    """Seed the user directory and return the ids by first name."""
    with store.session() as db:
        for uid, name, email, role in SEED_USERS:
            db.add(User(id=uid, name=name, email=email, role=role))
        db.commit()
    return SimpleNamespace(alice=1, bob=2, carol=3, dan=4, eve=5)


@pytest.fixture
def db(store, users):
    """Session on the test database with users already seeded."""
    session = store.session()
    try:
        yield session
    finally:
        session.close()
