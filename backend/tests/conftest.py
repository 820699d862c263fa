"""
Test Configuration — Fixtures for async DB, test client, engine services and mock data.

Each test gets its own in-memory SQLite database (StaticPool keeps the single
connection alive for the test's lifetime), so commits inside engine code are
real commits and nothing leaks between tests.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db, get_event_broadcaster, get_tenant_db
from api.main import app
from conflicts.audit import SqlAuditSink
from conflicts.lifecycle import LifecycleManager
from conflicts.orchestrator import AnalysisOrchestrator
from conflicts.repository import SqlAnalysisStore, SqlConflictRepository, SqlRecordStore
from conflicts.types import EngineContext
from db.session import Base, build_session_factory
from events.broadcaster import InMemoryBroadcaster

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ORGANIZATION_ID = "00000000-0000-0000-0000-000000000001"
OTHER_ORGANIZATION_ID = "00000000-0000-0000-0000-000000000002"


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = build_session_factory(test_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def ctx():
    return EngineContext(organization_id=ORGANIZATION_ID, user_id="analyst1")


@pytest.fixture
def other_ctx():
    return EngineContext(organization_id=OTHER_ORGANIZATION_ID, user_id="intruder")


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def repository(test_db):
    return SqlConflictRepository(test_db)


@pytest.fixture
def lifecycle(test_db, repository, broadcaster):
    return LifecycleManager(repository, SqlAuditSink(test_db), broadcaster)


@pytest.fixture
def orchestrator(test_db, repository, broadcaster):
    return AnalysisOrchestrator(
        SqlRecordStore(test_db),
        SqlAnalysisStore(test_db),
        repository,
        SqlAuditSink(test_db),
        broadcaster,
    )


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth0|test-user-id",
        "email": "analyst1",
        "organization_id": ORGANIZATION_ID,
    }


@pytest.fixture
async def client(test_db, mock_user, broadcaster):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    async def override_get_tenant_db():
        """Return the shared test session; tenant binding is covered in test_tenant_context.py."""
        return test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_tenant_db] = override_get_tenant_db
    app.dependency_overrides[get_event_broadcaster] = lambda: broadcaster

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """Seed both organizations."""
    from db.models import Organization

    org = Organization(organization_id=uuid.UUID(ORGANIZATION_ID), name="Test Grocers")
    other = Organization(organization_id=uuid.UUID(OTHER_ORGANIZATION_ID), name="Other Grocers")
    test_db.add_all([org, other])
    await test_db.commit()
    return {"organization": org, "other_organization": other}


@pytest.fixture
def make_analysis(test_db, seeded_db):
    """Factory: persist an analysis and its rows; returns the analysis id as str.

    Rows are (product_id, upc) or (product_id, upc, warehouse_id, location).
    """
    from db.models import Analysis, AnalysisRecord

    async def _make(rows, organization_id: str = ORGANIZATION_ID, file_name: str = "catalog.csv") -> str:
        analysis = Analysis(organization_id=uuid.UUID(organization_id), file_name=file_name)
        test_db.add(analysis)
        await test_db.flush()
        for index, row in enumerate(rows):
            product_id, upc, *rest = row
            test_db.add(
                AnalysisRecord(
                    analysis_id=analysis.analysis_id,
                    row_number=index + 1,
                    product_id=product_id,
                    upc=upc,
                    warehouse_id=rest[0] if len(rest) > 0 else None,
                    location=rest[1] if len(rest) > 1 else None,
                    raw_data={"product_id": product_id, "upc": upc},
                )
            )
        await test_db.commit()
        return str(analysis.analysis_id)

    return _make
