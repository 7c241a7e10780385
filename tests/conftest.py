"""Shared test fixtures — async DB, client, auth helpers, factories, doubles.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test settings before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["OT_ELIGIBLE_DEPARTMENTS"] = '["Production", "Store"]'

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hrms_engine.attendance.schemas import SweepResult, SyncResult
from hrms_engine.common.clock import local_today
from hrms_engine.common.constants import EmployeeType, LoginType, NotificationType
from hrms_engine.config import settings
from hrms_engine.database import Base, get_db
from hrms_engine.main import create_app
from hrms_engine.scheduler import JobRunner

# Import ALL model modules so SQLAlchemy can resolve cross-module foreign keys
import hrms_engine.common.audit  # noqa: F401
import hrms_engine.core_hr.models  # noqa: F401
import hrms_engine.ledger.models  # noqa: F401
import hrms_engine.attendance.models  # noqa: F401
import hrms_engine.approvals.models  # noqa: F401
import hrms_engine.notifications.models  # noqa: F401

# ── SQLite compat: compile PG-specific types to TEXT/CHAR ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
@event.listens_for(engine.sync_engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine.sync_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from hrms_engine.common.rate_limit import limiter

    limiter.reset()
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Test doubles ────────────────────────────────────────────────────

class RecordingNotifier:
    """NotificationPort that remembers every call; optionally fails."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []

    async def notify(
        self,
        recipient_id: uuid.UUID,
        message: str,
        *,
        title: str,
        type: NotificationType = NotificationType.info,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> None:
        if self.fail:
            raise RuntimeError("notification channel down")
        self.sent.append(
            dict(
                recipient_id=recipient_id,
                message=message,
                title=title,
                type=type,
                entity_type=entity_type,
                entity_id=entity_id,
            )
        )

    def recipients(self) -> list[uuid.UUID]:
        return [n["recipient_id"] for n in self.sent]


class FakePunchSource:
    """PunchSource returning canned rows, raising, or waiting on an event."""

    name = "fake-source"

    def __init__(
        self,
        rows: Optional[list[dict]] = None,
        *,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        delay: float = 0,
    ) -> None:
        self.rows = rows or []
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls: list[tuple[date, date]] = []

    async def fetch(self, from_date: date, to_date: date) -> list[dict]:
        self.calls.append((from_date, to_date))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.rows)


class StubJobRunner:
    """Stands in for JobRunner on the HTTP trigger endpoints."""

    def __init__(self, skip: bool = False) -> None:
        self.skip = skip
        self.runs: list[str] = []

    async def run_attendance_sync(self, *, now=None):
        self.runs.append("sync")
        if self.skip:
            return None
        today = local_today()
        return SyncResult(from_date=today - timedelta(days=1), to_date=today, fetched=3)

    async def run_overtime_sweep(self, *, today=None):
        self.runs.append("sweep")
        if self.skip:
            return None
        return SweepResult(evaluated=1, forfeited=1)


def make_job_runner(source: Optional[FakePunchSource] = None) -> JobRunner:
    source = source or FakePunchSource()
    return JobRunner(session_factory=TestSessionFactory, source_factory=lambda: source)


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
def jobs() -> StubJobRunner:
    return StubJobRunner()


@pytest.fixture
async def app(jobs):
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app(jobs=jobs)
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

def _make_department(
    *,
    name: str = "Production",
    code: Optional[str] = None,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        name=name,
        code=code or name[:3].upper() + uuid.uuid4().hex[:3].upper(),
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


def _make_employee(
    *,
    first_name: str = "Test",
    last_name: str = "User",
    login_type: LoginType = LoginType.employee,
    employee_type: EmployeeType = EmployeeType.confirmed,
    department_id: Optional[uuid.UUID] = None,
    paid_leave_balance: Decimal = Decimal("12"),
    biometric_user_id: Optional[str] = None,
    is_active: bool = True,
) -> dict:
    code = f"EMP-{uuid.uuid4().hex[:6].upper()}"
    # Watermarks at today keep lazy accrual from moving the balance
    return dict(
        id=uuid.uuid4(),
        employee_code=code,
        biometric_user_id=biometric_user_id,
        email=f"{code.lower()}@example.com",
        first_name=first_name,
        last_name=last_name,
        login_type=login_type,
        employee_type=employee_type,
        department_id=department_id,
        date_of_joining=date(2024, 1, 15),
        is_active=is_active,
        paid_leave_balance=paid_leave_balance,
        unpaid_leave_taken=Decimal("0"),
        compensatory_balance_hours=Decimal("0"),
        last_paid_leave_reset_at=local_today(),
        last_monthly_leave_credit_at=local_today(),
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


async def seed_department(db: AsyncSession, name: str = "Production"):
    from hrms_engine.core_hr.models import Department

    dept = Department(**_make_department(name=name))
    db.add(dept)
    await db.flush()
    return dept


async def seed_employee(db: AsyncSession, **kwargs):
    from hrms_engine.core_hr.models import Employee

    emp = Employee(**_make_employee(**kwargs))
    db.add(emp)
    await db.flush()
    return emp


@pytest.fixture
async def org(db) -> dict:
    """One department with an employee, its HOD, an Admin and the CEO."""
    production = await seed_department(db, "Production")
    marketing = await seed_department(db, "Marketing")
    return dict(
        production=production,
        marketing=marketing,
        employee=await seed_employee(
            db, first_name="Asha", department_id=production.id, biometric_user_id="1001",
        ),
        hod=await seed_employee(
            db, first_name="Hari", login_type=LoginType.hod, department_id=production.id,
        ),
        admin=await seed_employee(
            db, first_name="Anil", login_type=LoginType.admin, department_id=marketing.id,
        ),
        ceo=await seed_employee(
            db, first_name="Chitra", login_type=LoginType.ceo, department_id=marketing.id,
        ),
        other_hod=await seed_employee(
            db, first_name="Mona", login_type=LoginType.hod, department_id=marketing.id,
        ),
        marketer=await seed_employee(
            db, first_name="Ravi", department_id=marketing.id, biometric_user_id="2001",
        ),
    )


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(employee_id: uuid.UUID, expired: bool = False) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {"sub": str(employee_id), "type": "access", "exp": exp}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers_for(employee) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee.id)}"}
