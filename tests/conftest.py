# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures for casewatch.

Every test that touches storage gets its own SQLite file database. Sessions
run with ``BEGIN IMMEDIATE`` so writers serialise the way row locks do in
PostgreSQL and SAVEPOINTs work, which the executor's auto-actions rely on.
"""

import os
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pytest
import pytest_asyncio
from freezegun import freeze_time
from httpx import AsyncClient, ASGITransport


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any casewatch modules
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "LOG_LEVEL": "WARNING",
    "DEFAULT_CALENDAR_TIMEZONE": "UTC",
    "NOTIFICATION_CHANNEL": "email",
    "ESCALATION_WORKER_CONCURRENCY": "4",
})
os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from casewatch.business.lifecycle import Actor
from casewatch.services.notifications import NotificationTarget
from casewatch.services.timeline_ledger import TimelineLedger
from casewatch.storage.db import Base, session_scope
from casewatch.storage.models import CaseRecord, CaseUser, EscalationRule, new_id


# ==== DATABASE FIXTURES ==== #


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Per-test SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'casewatch.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Transactional session scope bound to the test database."""
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    return session_scope(maker)


@pytest.fixture
def persist(session_factory):
    """Insert model instances in one committed transaction."""

    async def _persist(*objects):
        async with session_factory() as db:
            db.add_all(objects)
        return objects[0] if len(objects) == 1 else objects

    return _persist


@pytest.fixture
def append_event(session_factory):
    """Append a timeline event through the ledger in its own transaction."""

    async def _append(case, event_type, stage, at, actor: Optional[Actor] = None, **extra):
        async with session_factory() as db:
            return await TimelineLedger(db).append(
                case, event_type, stage, actor or Actor.system(), at, extra=extra or None
            )

    return _append


# ==== TIME FIXTURES ==== #


@pytest.fixture
def base_time():
    """Monday 2024-03-04 09:00 UTC, the start of a business day."""
    return datetime(2024, 3, 4, 9, 0, 0)


@pytest.fixture
def frozen_time(base_time):
    """Freeze the clock at ``base_time``."""
    with freeze_time(base_time) as frozen:
        yield frozen


# ==== MODEL FACTORIES ==== #


@pytest.fixture
def make_case():
    def _make_case(**overrides: Any) -> CaseRecord:
        values: Dict[str, Any] = {
            "id": new_id(),
            "company_id": "acme",
            "branch_id": "north",
            "case_type": "incident",
            "status": "open",
            "priority": "medium",
            "assigned_to": None,
            "reporter_id": "reporter-1",
            "attributes": {},
            "created_at": datetime(2024, 3, 4, 9, 0, 0),
            "updated_at": datetime(2024, 3, 4, 9, 0, 0),
        }
        values.update(overrides)
        return CaseRecord(**values)

    return _make_case


@pytest.fixture
def make_rule():
    """EscalationRule with every column set, usable without a database."""

    def _make_rule(**overrides: Any) -> EscalationRule:
        values: Dict[str, Any] = {
            "id": new_id(),
            "company_id": "acme",
            "branch_id": None,
            "is_global": False,
            "name": "Triage SLA",
            "description": None,
            "stage": "triage",
            "applies_to": "all",
            "priority": 0,
            "warning_threshold": 60,
            "escalation_threshold": 120,
            "critical_threshold": 240,
            "use_business_hours": False,
            "exclude_weekends": True,
            "exclude_holidays": True,
            "business_hours": None,
            "timezone": None,
            "escalation_level": 1,
            "escalation_to_user_id": None,
            "notify_current_assignee": True,
            "notify_branch_admin": True,
            "notify_company_admin": False,
            "notify_super_admin": False,
            "notify_emails": [],
            "auto_reassign": False,
            "reassign_to_user_id": None,
            "auto_change_priority": False,
            "new_priority": None,
            "conditions": None,
            "is_active": True,
            "deleted_at": None,
            "created_by": None,
            "updated_by": None,
            "created_at": datetime(2024, 1, 1, 0, 0, 0),
            "updated_at": datetime(2024, 1, 1, 0, 0, 0),
        }
        values.update(overrides)
        return EscalationRule(**values)

    return _make_rule


@pytest.fixture
def make_user():
    def _make_user(**overrides: Any) -> CaseUser:
        values: Dict[str, Any] = {
            "id": new_id(),
            "company_id": "acme",
            "branch_id": "north",
            "email": f"user-{new_id()[:8]}@example.com",
            "name": None,
            "role": "staff",
            "is_active": True,
        }
        values.update(overrides)
        return CaseUser(**values)

    return _make_user


# ==== NOTIFICATION DOUBLES ==== #


class RecordingQueue:
    """Notification queue double that records enqueued requests."""

    def __init__(self, fail_for: Optional[List[str]] = None):
        self.requests: List[Dict[str, Any]] = []
        self.fail_for = set(fail_for or [])

    async def enqueue(self, target: NotificationTarget, channel: str, payload: Mapping[str, Any]) -> str:
        if target.email in self.fail_for or target.user_id in self.fail_for:
            raise ConnectionError("notification service unavailable")
        self.requests.append({"target": target, "channel": channel, "payload": dict(payload)})
        return f"notification-{len(self.requests)}"


@pytest.fixture
def notification_queue():
    return RecordingQueue()


@pytest.fixture
def queue_factory():
    """Build recording queues, optionally failing for given emails or user ids."""
    return RecordingQueue


# ==== API FIXTURES ==== #


@pytest.fixture
def app(session_factory):
    """
    Create the FastAPI application bound to the test database.

    Both the request session and the scope handed to engine services are
    overridden, so routes and the executor share the per-test database.
    """
    from casewatch.main import create_app
    from casewatch.storage.db import get_db_session, get_session_scope

    async def _test_db_session():
        async with session_factory() as session:
            yield session

    app = create_app()
    app.dependency_overrides[get_db_session] = _test_db_session
    app.dependency_overrides[get_session_scope] = lambda: session_factory
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    """HTTP test client over ASGI transport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def company_headers():
    """Headers scoping requests to the ``acme`` company."""
    return {"X-Company-Id": "acme", "X-User-Id": "admin-1"}
