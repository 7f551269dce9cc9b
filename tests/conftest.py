import os
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret-key-that-is-long-enough-for-hs256')

from tutorbook.core import config  # noqa: E402
from tutorbook.database import Base, build_engine, get_db  # noqa: E402
from tutorbook.main import app  # noqa: E402
from tutorbook.models.appointment import Appointment, ReservationLock  # noqa: E402
from tutorbook.models.availability import AvailabilityException, RecurringAvailabilityRule  # noqa: E402
from tutorbook.models.user import Actor, User, UserRole  # noqa: E402
from tutorbook.routes.appointment_routes import get_dispatcher  # noqa: E402

# 2030-01-01 is a Tuesday; the Mondays that follow are Jan 7, 14, 21 and 28.
FROZEN_NOW = datetime(2030, 1, 1, 8, 0)

TABLES = [
    User.__table__,
    RecurringAvailabilityRule.__table__,
    AvailabilityException.__table__,
    Appointment.__table__,
    ReservationLock.__table__,
]


class RecordingDispatcher:
    def __init__(self) -> None:
        self.events = []

    def dispatch(self, event) -> None:
        self.events.append(event)

    @property
    def event_types(self) -> list[str]:
        return [event.event_type.value for event in self.events]


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))
        engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    engine = build_engine(f'sqlite:///{tmp_path / "scheduling.db"}')
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def add_user(session, email: str, role: UserRole) -> Actor:
    user = User(email=email, hashed_password='', role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return Actor.from_user(user)


@pytest.fixture
def people(db):
    return {
        'tutor': add_user(db, 'tutor@example.edu', UserRole.TUTOR),
        'other_tutor': add_user(db, 'tutor2@example.edu', UserRole.TUTOR),
        'student': add_user(db, 'student@example.edu', UserRole.STUDENT),
        'other_student': add_user(db, 'student2@example.edu', UserRole.STUDENT),
        'admin': add_user(db, 'admin@example.edu', UserRole.ADMIN),
    }


def access_token(email: str) -> str:
    payload = {'sub': email, 'exp': datetime.now(timezone.utc) + timedelta(minutes=5)}
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


@pytest.fixture
def auth_headers():
    def factory(email: str) -> dict[str, str]:
        return {'Authorization': f'Bearer {access_token(email)}'}

    return factory


@pytest.fixture
def client(session_factory, dispatcher):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
