"""Shared fixtures: in-memory SQLite database, API client and staff tokens."""

import os

os.environ["CLINIC_CRM_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CLINIC_CRM_CAL_WEBHOOK_SECRET"] = "test-cal-secret"
os.environ["CLINIC_CRM_ENVIRONMENT"] = "development"
os.environ["CLINIC_CRM_EXPOSE_VERIFY_URL"] = "true"
os.environ["CLINIC_CRM_PASSWORD_HASH_ROUNDS"] = "4"

from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import clinic_crm.models  # noqa: F401  registers every table on Base.metadata
from clinic_crm.database import Base, get_db
from clinic_crm.main import app
from clinic_crm.middleware.auth import create_access_token
from clinic_crm.models.lead import Lead
from clinic_crm.services.identity import login_throttle

CAL_SECRET = "test-cal-secret"
DOCTOR_ID = "doctor-1"
EMPLOYEE_ID = "employee-1"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def reset_login_throttle():
    login_throttle.reset()
    yield
    login_throttle.reset()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_lead(db):
    """Insert a lead; keyword arguments override the defaults."""
    counter = {"n": 0}

    async def _make(**overrides) -> Lead:
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "id": f"lead_test_{n}",
            "case_id": f"GH-TEST-{n:04d}",
            "name": f"Patient {n}",
            "status": "new",
            "portal_token": f"portal-token-{n}",
            "portal_status": "pending_review",
            "created_at": datetime(2025, 1, n, 9, 0),
        }
        fields.update(overrides)
        lead = Lead(**fields)
        db.add(lead)
        await db.commit()
        return lead

    return _make


def _bearer(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def admin_headers():
    return _bearer("admin@example.com", "admin")


@pytest.fixture
def doctor_headers():
    return _bearer(DOCTOR_ID, "doctor")


@pytest.fixture
def employee_headers():
    return _bearer(EMPLOYEE_ID, "employee")
