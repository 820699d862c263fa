"""
Tests for per-transaction tenant context (PostgreSQL RLS variable).
"""

import pytest
from sqlalchemy import text

from conflicts.audit import SqlAuditSink
from conflicts.lifecycle import LifecycleManager
from conflicts.orchestrator import AnalysisOrchestrator
from conflicts.repository import SqlAnalysisStore, SqlConflictRepository, SqlRecordStore
from db import session as session_module
from db.session import bind_tenant_context

ORGANIZATION_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture
def tenant_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(session_module, "_set_tenant", lambda connection, oid: calls.append(oid))
    return calls


@pytest.mark.asyncio
class TestTenantContext:
    async def test_reapplied_after_every_commit(self, test_db, tenant_calls):
        bind_tenant_context(test_db, ORGANIZATION_ID)

        for _ in range(3):
            await test_db.execute(text("SELECT 1"))
            await test_db.commit()

        assert tenant_calls == [ORGANIZATION_ID] * 3

    async def test_bulk_assign_sets_context_per_item(self, test_db, broadcaster, ctx, make_analysis, tenant_calls):
        analysis_id = await make_analysis([("P1", "U1"), ("P2", "U1"), ("P3", "U2"), ("P4", "U2")])
        repository = SqlConflictRepository(test_db)
        await AnalysisOrchestrator(
            SqlRecordStore(test_db), SqlAnalysisStore(test_db), repository, SqlAuditSink(test_db), broadcaster
        ).run_analysis(ctx, analysis_id)
        ids = [str(c.conflict_id) for c in await repository.list_conflicts(ORGANIZATION_ID)]
        await test_db.commit()

        bind_tenant_context(test_db, ORGANIZATION_ID)
        manager = LifecycleManager(repository, SqlAuditSink(test_db), broadcaster)
        result = await manager.bulk_assign(ctx, ids, "u1")

        assert sorted(result.succeeded) == sorted(ids)
        # One transaction per assigned conflict, each scoped to the tenant
        assert len(tenant_calls) >= len(ids)
        assert set(tenant_calls) == {ORGANIZATION_ID}

    async def test_non_postgres_dialect_is_untouched(self, test_db):
        bind_tenant_context(test_db, ORGANIZATION_ID)
        assert (await test_db.execute(text("SELECT 1"))).scalar() == 1
