import os

# Keep imports from touching a real database file or starting the sweeper
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SWEEP_ENABLED", "false")

from datetime import datetime
from itertools import count

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from courier import models
from courier.db import Base, get_db, get_session_factory
from courier.notifications import RecordingNotifier, set_notifier

T0 = datetime(2026, 3, 2, 9, 0, 0)

PICKUP = (12.9716, 77.5946)
DROP = (12.9352, 77.6245)

# ~0.008993 degrees of latitude per km
KM_LAT = 1 / 111.195


def north_of_pickup(km: float):
    return PICKUP[0] + km * KM_LAT, PICKUP[1]


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    recording = RecordingNotifier()
    set_notifier(recording)
    yield recording
    set_notifier(None)


@pytest.fixture
def make_user(session_factory):
    """Insert a user in its own committed session and return its id."""
    phones = count(9000000001)

    def _make(role=models.UserRole.RIDER, lat=None, lng=None, is_online=True, name=None):
        with session_factory() as session:
            user = models.User(
                role=role,
                phone=str(next(phones)),
                name=name,
                lat=lat,
                lng=lng,
                is_online=is_online,
            )
            session.add(user)
            session.commit()
            return user.id

    return _make


@pytest.fixture
def requester(make_user):
    return make_user(role=models.UserRole.REQUESTER, is_online=False, name="Asha")


@pytest.fixture
def riders(make_user):
    """Three online riders 1.2 km, 2 km and 4 km north of the pickup."""
    return [
        make_user(lat=north_of_pickup(km)[0], lng=north_of_pickup(km)[1], name=f"Rider {km}")
        for km in (1.2, 2.0, 4.0)
    ]


@pytest.fixture
def client(session_factory):
    from courier.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()
