"""
Shared fixtures: an in-memory SQLite database per test with the same
overlap trigger and savepoint handling the app uses.
"""
import os

# must be set before rallio modules read their configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["LOCK_BACKEND"] = "database"
os.environ["ENVIRONMENT"] = "test"
os.environ["PAYMONGO_WEBHOOK_SECRET"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rallio.database import models  # noqa: F401
from rallio.database.database import Base, enable_sqlite_savepoints

from tests.helpers import FakeGateway, make_court, make_user, make_venue


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def venue(db):
    return make_venue(db)


@pytest.fixture
def court(db, venue):
    return make_court(db, venue)


@pytest.fixture
def player(db):
    return make_user(db, "player@example.com")


@pytest.fixture
def other_player(db):
    return make_user(db, "other@example.com")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role="admin")


@pytest.fixture
def gateway():
    return FakeGateway()
