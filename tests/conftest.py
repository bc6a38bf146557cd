import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("ENABLE_EMAIL", "false")
os.environ.setdefault("ENABLE_CALENDAR", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from taskpilot.auth.principal import Principal
from taskpilot.auth.security import create_access_token, get_password_hash
from taskpilot.db import Base, get_db
from taskpilot.services.calendar import CalendarPort
from taskpilot.services.lifecycle import WorkItemLifecycle
from taskpilot.services.notifications import Notifier, NotifyResult
from taskpilot.services.users import UserStore
from taskpilot.services.work_items import WorkItemStore


NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)
PASSWORD = "secret123"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail_for = set()
        self.raise_error = False

    def notify(self, recipient_email, subject, body):
        if self.raise_error:
            raise RuntimeError("smtp down")
        if recipient_email in self.fail_for:
            return NotifyResult(False, "rejected by relay")
        self.sent.append((recipient_email, subject, body))
        return NotifyResult(True)

    def subjects_for(self, email):
        return [subject for to, subject, _ in self.sent if to == email]


class RecordingCalendar(CalendarPort):
    def __init__(self):
        self.events = []
        self.raise_error = False

    def create_event(self, credentials, item):
        if self.raise_error:
            raise RuntimeError("calendar down")
        self.events.append((credentials.user_id, item.id))
        return True


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(eng, "connect")
    def _fks(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _make_user(db, name, email, role):
    return UserStore(db).create(
        name=name, email=email, password_hash=get_password_hash(PASSWORD), role=role
    )


@pytest.fixture
def admin(db):
    return _make_user(db, "Alice Admin", "alice@example.com", "admin")


@pytest.fixture
def second_admin(db):
    return _make_user(db, "Bob Admin", "bob@example.com", "admin")


@pytest.fixture
def worker(db):
    return _make_user(db, "Wendy Worker", "wendy@example.com", "worker")


@pytest.fixture
def other_worker(db):
    return _make_user(db, "Walt Worker", "walt@example.com", "worker")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def calendar():
    return RecordingCalendar()


@pytest.fixture
def clock():
    state = {"now": NOW}

    def _clock():
        return state["now"]

    _clock.state = state
    return _clock


@pytest.fixture
def lifecycle(db, notifier, calendar, clock):
    return WorkItemLifecycle(
        WorkItemStore(db),
        UserStore(db),
        notifier,
        calendar,
        timezone_str="America/Vancouver",
        clock=clock,
    )


def principal(user):
    return Principal(id=user.id, role=user.role)


def deadline(days=3):
    return NOW + timedelta(days=days)


@pytest.fixture
def client(session_factory, notifier, calendar):
    from taskpilot.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    previous = (app.state.notifier, app.state.calendar)
    app.state.notifier = notifier
    app.state.calendar = calendar
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.notifier, app.state.calendar = previous


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}
