"""Shared fixtures: an in-memory database swapped into the app, users and auth headers."""

import datetime
import os
import sys
import tempfile

# The app connects to its database at import time, so point it somewhere harmless first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("UPLOAD_FOLDER", tempfile.mkdtemp(prefix="photo-circle-uploads-"))

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import jwt  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from werkzeug.security import generate_password_hash  # noqa: E402

from app import app  # noqa: E402
from models import Base, User  # noqa: E402


@pytest.fixture
def test_session():
    """Create a test database session and install it as the app's session."""
    # Use an in-memory SQLite database shared by every connection of this engine
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()

    # Monkey patch the global session in app.py for testing
    import app as app_module

    original_session = app_module.session
    app_module.session = session

    yield session

    # Restore original session
    app_module.session = original_session
    session.close()
    engine.dispose()


@pytest.fixture
def client(test_session):
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    """Point uploads at a per-test directory."""
    monkeypatch.setitem(app.config, "UPLOAD_FOLDER", str(tmp_path))
    return tmp_path


@pytest.fixture
def make_user(test_session):
    """Factory for persisted users; pass user_id to control pair ordering."""

    def _make_user(display_name, user_id=None, email=None, handle=None, password="password123"):
        slug = display_name.lower().replace(" ", ".")
        user = User(
            email=email or f"{slug}@example.com",
            password_hash=generate_password_hash(password),
            display_name=display_name,
            handle=handle or slug,
        )
        if user_id is not None:
            user.id = user_id
        test_session.add(user)
        test_session.commit()
        return user

    return _make_user


def make_token(user_id, minutes=30):
    return jwt.encode(
        {
            "user_id": user_id,
            "exp": datetime.datetime.now(datetime.timezone.utc)
            + datetime.timedelta(minutes=minutes),
        },
        app.config["SECRET_KEY"],
        algorithm="HS256",
    )


@pytest.fixture
def auth_headers():
    """Build request headers carrying a valid token for the given user."""

    def _auth_headers(user):
        return {"x-access-token": make_token(user.id)}

    return _auth_headers
