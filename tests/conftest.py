"""
Pytest fixtures for the Marcha Fúnebre backend tests.

Provides an in-memory database, a session per test, user and item factories
and an API client whose requests share the test session.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marcha.auth.security import create_access_token
from marcha.db import Base, get_db
from marcha.models.models import InventoryItem, User


@pytest.fixture(scope='function')
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope='function')
def db_session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope='function')
def make_user(db_session):
    """Factory for users; every call gets a unique email."""
    counter = {"n": 0}

    def _make(name="Conductor", role="conductor", points=0, status="active", email=None):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@marcha.test",
            name=name,
            role=role,
            status=status,
            points=points,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture(scope='function')
def make_item(db_session):
    def _make(name="Cono reflectante", quantity=10, locations=None):
        item = InventoryItem(name=name, quantity=quantity, locations=locations or [])
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item

    return _make


@pytest.fixture(scope='function')
def client(db_session):
    """API client; requests run against the test session."""
    from marcha.main import app

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user):
    token = create_access_token(str(user.id), user.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope='function')
def headers_for():
    return auth_headers


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user(name="Admin", role="admin", email="admin@marcha.test")


@pytest.fixture(scope='function')
def driver(make_user):
    return make_user(name="Lucía", role="conductor", email="lucia@marcha.test")


@pytest.fixture(scope='function')
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture(scope='function')
def driver_headers(driver):
    return auth_headers(driver)
