"""
Pytest configuration and shared fixtures for the reporting engine test suite.

Tests run against a throwaway SQLite file; the schema is recreated for every test.
"""

import os
import tempfile
import uuid as _uuid

# Set the database BEFORE importing the engine: the SQLAlchemy engine is built at import.
# A file (not :memory:) gives every session its own connection and real transactions.
_test_db_path = os.path.join(tempfile.gettempdir(), f"reporting_test_{_uuid.uuid4().hex[:8]}.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_test_db_path}"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.pop("REPORT_ARTIFACT_DIR", None)

from datetime import date, datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from jose import jwt  # noqa: E402

from src.reporting import config  # noqa: E402
from src.reporting.database import Base, SessionFactory, engine  # noqa: E402
from src.reporting.engine.seed import seed_catalog  # noqa: E402
from src.reporting.engine.service import ReportingEngine  # noqa: E402
from src.reporting.models.enums import GoalPeriod, UserRole  # noqa: E402
from src.reporting.models.orm_models import (  # noqa: E402
    AuditEntry, Event, Goal, User, Venue, VenueMembership,
)


@pytest.fixture(autouse=True)
def schema():
    """Fresh tables for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """A session for arranging and inspecting data. Commit before calling the engine."""
    session = SessionFactory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def catalog(db):
    """The five catalog metric types keyed by code."""
    metric_types = seed_catalog(db)
    db.commit()
    return metric_types


@pytest.fixture
def make_user(db):
    """Factory for users with a global role."""
    def _make(role=UserRole.STAFF.value, is_active=True, email=None):
        user = User(
            email=email or f"user_{_uuid.uuid4().hex[:8]}@example.com",
            password_hash="x",
            full_name="Test User",
            role=role,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def venue(db):
    venue = Venue(name="Green Conference Center", city="Greenville", country="USA")
    db.add(venue)
    db.commit()
    return venue


@pytest.fixture
def make_event(db, venue):
    """Factory for events at the default venue."""
    def _make(start=date(2024, 5, 10), end=date(2024, 5, 12), venue_id=None, name="Eco Awareness Summit"):
        event = Event(venue_id=venue_id or venue.id, name=name, start_date=start, end_date=end,
                      expected_attendees=300)
        db.add(event)
        db.commit()
        return event
    return _make


@pytest.fixture
def event(make_event):
    return make_event()


@pytest.fixture
def add_member(db):
    """Give a user a role at a venue."""
    def _add(user, venue, role):
        db.add(VenueMembership(user_id=user.id, venue_id=venue.id, role=role))
        db.commit()
    return _add


@pytest.fixture
def super_admin(make_user):
    return make_user(role=UserRole.SUPER_ADMIN.value)


@pytest.fixture
def venue_admin(make_user, add_member, venue):
    user = make_user(role=UserRole.STAFF.value)
    add_member(user, venue, UserRole.VENUE_ADMIN.value)
    return user


@pytest.fixture
def staff(make_user, add_member, venue):
    user = make_user(role=UserRole.STAFF.value)
    add_member(user, venue, UserRole.STAFF.value)
    return user


@pytest.fixture
def make_goal(db):
    def _make(venue, metric_type, target, period=GoalPeriod.EVENT.value):
        goal = Goal(venue_id=venue.id, metric_type_id=metric_type.id, target_value=target, period=period)
        db.add(goal)
        db.commit()
        return goal
    return _make


@pytest.fixture
def reporting_engine():
    return ReportingEngine()


@pytest.fixture
def audit_entries(db):
    """Callable returning current audit entries, oldest first."""
    def _entries(action=None):
        db.expire_all()
        query = db.query(AuditEntry).order_by(AuditEntry.id)
        if action is not None:
            query = query.filter(AuditEntry.action == action)
        return query.all()
    return _entries


@pytest.fixture
def auth_headers():
    """Bearer headers in the auth provider's token format: `sub` is the user id."""
    def _headers(user, expires_in=timedelta(minutes=30)):
        claims = {"sub": str(user.id), "exp": datetime.now(timezone.utc) + expires_in}
        token = jwt.encode(claims, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)
        return {"Authorization": f"Bearer {token}"}
    return _headers


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    if os.path.exists(_test_db_path):
        os.remove(_test_db_path)
