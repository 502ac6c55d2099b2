"""
Shared fixtures and configuration for all tests.
"""
import os
from datetime import datetime, timedelta
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

# Override environment settings for testing
os.environ["ENVIRONMENT"] = "testing"
os.environ["SECRET_KEY"] = "testsecretkey"
os.environ["BACKEND_CORS_ORIGINS"] = '["http://localhost:3000"]'
os.environ["SQLALCHEMY_DATABASE_URI"] = os.getenv(
    "TEST_DATABASE_URI", "sqlite:///./test.db"
)
os.environ["WEBHOOK_DEBOUNCE_SECONDS"] = "0.05"

from calsync.main import app
from calsync.api.deps import get_current_user
from calsync.core.security import encrypt_token
from calsync.db.base import Base, SessionLocal, engine
from calsync.db.session import get_db
from calsync.models.booking import Booking, BookingStatus
from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    ExternalCalendarAccount,
    MappingDirection,
)
from calsync.models.project import Project, Technician
from calsync.models.user import User
from calsync.services.holds import SlotHoldManager
from calsync.services.locks import AccountLockRegistry
from calsync.services.reconciliation import ReconciliationEngine
from tests.factories import BASE_TIME, FakeAdapter, FakeClock

# Test fixtures for the database
@pytest.fixture
def db():
    """
    Create a fresh database for each test.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_user(db):
    user = User(id=1, email="owner@example.com", name="Owner", is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def project(db, test_user):
    project = Project(id=1, owner_id=test_user.id, name="Ace Plumbing")
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


@pytest.fixture
def technician(db, project):
    technician = Technician(id=1, project_id=project.id, name="Sam")
    db.add(technician)
    db.commit()
    db.refresh(technician)
    return technician


@pytest.fixture
def make_account(db, test_user, project):
    """Create a connected account with one mapping to ``project``."""

    def _make(
        provider: CalendarProvider = CalendarProvider.GOOGLE,
        direction: MappingDirection = MappingDirection.IMPORT,
        token_expires_at: Optional[datetime] = None,
        **fields,
    ) -> ExternalCalendarAccount:
        values: Dict = {
            "user_id": test_user.id,
            "provider": provider,
            "account_email": fields.pop("account_email", f"tech-{provider.value}@example.com"),
            "access_token_encrypted": encrypt_token("stored-access"),
            "refresh_token_encrypted": encrypt_token("stored-refresh"),
            "token_expires_at": token_expires_at or datetime.utcnow() + timedelta(hours=1),
        }
        if provider == CalendarProvider.ICS:
            values.update(
                account_email=None,
                access_token_encrypted=None,
                refresh_token_encrypted=None,
                token_expires_at=None,
                ics_url="https://example.com/feed.ics",
            )
        values.update(fields)
        account = ExternalCalendarAccount(**values)
        db.add(account)
        db.commit()
        db.add(
            CalendarMapping(
                account_id=account.id,
                project_id=project.id,
                direction=direction,
            )
        )
        db.commit()
        db.refresh(account)
        return account

    return _make


@pytest.fixture
def make_booking(db, project):
    def _make(**fields) -> Booking:
        values = {
            "project_id": project.id,
            "customer_name": "Pat Customer",
            "slot_start": BASE_TIME,
            "slot_end": BASE_TIME + timedelta(hours=1),
            "status": BookingStatus.BOOKED,
            "source": "manual",
        }
        values.update(fields)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def holds(clock):
    return SlotHoldManager(clock=clock)


@pytest.fixture
def locks():
    return AccountLockRegistry(timeout=1.0)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def reconciler(db, holds, locks, adapter):
    return ReconciliationEngine(
        db, holds=holds, locks=locks, adapter_factory=lambda provider: adapter
    )


# Test client with authentication
@pytest.fixture
def client():
    """Return a TestClient for making requests to the app."""
    yield TestClient(app)
    app.dependency_overrides = {}


@pytest.fixture
def authorized_client(client, test_user, db):
    """Return a TestClient that skips the authentication."""

    def override_get_current_user():
        return test_user

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_db] = override_get_db

    yield client

    app.dependency_overrides = {}
