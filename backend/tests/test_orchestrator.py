"""
Tests for the Analysis Orchestrator.

Covers:
  - End-to-end run: persistence, analysis bookkeeping, audit, events
  - Idempotent re-detection and terminal-state protection
  - Metadata refresh of open conflicts
  - Chunked reconciliation and progress ordering
  - Dependency failure with partial commit, and cancellation
"""

import asyncio

import pytest
from sqlalchemy import func, select

from conflicts import detector
from conflicts.audit import SqlAuditSink
from conflicts.orchestrator import AnalysisOrchestrator
from conflicts.repository import SqlAnalysisStore, SqlConflictRepository, SqlRecordStore
from conflicts.types import AnalysisStatus, ConflictStatus, Severity
from core.errors import DependencyFailure, NotFound, ValidationError
from db.models import AuditLog, Conflict
from events.broadcaster import InMemoryBroadcaster
from events.contracts import EventName, analysis_topic, org_topic

ORGANIZATION_ID = "00000000-0000-0000-0000-000000000001"

THREE_PAIRS = [("P1", "U1"), ("P2", "U1"), ("P3", "U2"), ("P4", "U2"), ("P5", "U3"), ("P6", "U3")]


class FlakyRepository(SqlConflictRepository):
    """Raises DependencyFailure on the n-th upsert."""

    def __init__(self, db, fail_on_call: int):
        super().__init__(db)
        self.fail_on_call = fail_on_call
        self.calls = 0

    async def upsert_candidate(self, organization_id, analysis_id, candidate):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise DependencyFailure("repository unavailable")
        return await super().upsert_candidate(organization_id, analysis_id, candidate)


class BrokenRecordStore:
    async def list_records(self, organization_id, analysis_id):
        raise DependencyFailure("record store unavailable")


class CancellingBroadcaster(InMemoryBroadcaster):
    """Sets the cancel event as soon as the first progress event goes out."""

    def __init__(self, cancel_event: asyncio.Event):
        super().__init__()
        self.cancel_event = cancel_event

    async def publish(self, topic, name, payload):
        delivered = await super().publish(topic, name, payload)
        if name == EventName.ANALYSIS_PROGRESS:
            self.cancel_event.set()
        return delivered


def _build(db, broadcaster, *, repository=None, record_store=None, **kwargs) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        record_store or SqlRecordStore(db),
        SqlAnalysisStore(db),
        repository or SqlConflictRepository(db),
        SqlAuditSink(db),
        broadcaster,
        **kwargs,
    )


async def _conflict_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(Conflict))).scalar()


async def _audit_actions(db, analysis_id) -> list[str]:
    result = await db.execute(select(AuditLog.action).where(AuditLog.resource_id == analysis_id))
    return sorted(result.scalars().all())


# ── End to end ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRunAnalysis:
    async def test_detects_and_persists(self, orchestrator, ctx, make_analysis, test_db):
        analysis_id = await make_analysis([("P1", "U1"), ("P2", "U1"), ("P3", "U5"), ("P3", "U6"), ("P3", "U7")])

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.COMPLETED
        assert outcome.created == 2
        assert outcome.conflicts_found == 2
        assert outcome.error is None

        result = await test_db.execute(select(Conflict).order_by(Conflict.natural_key))
        conflicts = result.scalars().all()
        assert [c.natural_key for c in conflicts] == ["DUPLICATE_UPC:U1", "MULTI_UPC_PRODUCT:P3"]
        assert all(c.status == ConflictStatus.NEW.value for c in conflicts)
        assert conflicts[1].severity == Severity.MEDIUM.value

        analysis = await SqlAnalysisStore(test_db).get(ORGANIZATION_ID, analysis_id)
        assert analysis.status == AnalysisStatus.COMPLETED.value
        assert analysis.progress == 100
        assert analysis.total_records == 5
        assert analysis.conflicts_found == 2
        assert analysis.statistics["conflicts_created"] == 2
        assert analysis.statistics["duplicate_upcs"] == 1
        assert await _audit_actions(test_db, analysis_id) == ["ANALYSIS_COMPLETED"]

    async def test_event_order(self, orchestrator, ctx, make_analysis, broadcaster):
        analysis_id = await make_analysis([("P1", "U1"), ("P2", "U1"), ("P3", "U2"), ("P4", "U2")])
        run_events = await broadcaster.subscribe(analysis_topic(analysis_id))
        org_events = await broadcaster.subscribe(org_topic(ORGANIZATION_ID))

        await orchestrator.run_analysis(ctx, analysis_id)

        names = [e.name for e in run_events.pending()]
        assert names == [
            EventName.CONFLICT_NEW,
            EventName.CONFLICT_NEW,
            EventName.ANALYSIS_PROGRESS,
            EventName.ANALYSIS_COMPLETE,
        ]
        assert [e.name for e in org_events.pending()] == names

    async def test_complete_event_payload(self, orchestrator, ctx, make_analysis, broadcaster):
        analysis_id = await make_analysis([("P1", "U1"), ("P2", "U1")])
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        await orchestrator.run_analysis(ctx, analysis_id)

        complete = events.pending()[-1]
        assert complete.payload == {
            "analysis_id": analysis_id,
            "conflicts_found": 1,
            "conflicts_created": 1,
            "conflicts_updated": 0,
            "conflicts_unchanged": 0,
        }

    async def test_conflict_free_batch(self, orchestrator, ctx, make_analysis, broadcaster, test_db):
        analysis_id = await make_analysis([("P1", "U1"), ("P2", "U2")])
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.COMPLETED
        assert outcome.conflicts_found == 0
        received = events.pending()
        assert [e.name for e in received] == [EventName.ANALYSIS_PROGRESS, EventName.ANALYSIS_COMPLETE]
        assert received[0].payload["percent"] == 100
        assert await _conflict_count(test_db) == 0

    async def test_empty_batch(self, orchestrator, ctx, make_analysis):
        analysis_id = await make_analysis([])
        outcome = await orchestrator.run_analysis(ctx, analysis_id)
        assert outcome.status == AnalysisStatus.COMPLETED
        assert outcome.statistics["total_records"] == 0


# ── Re-detection ───────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestReDetection:
    async def test_rerun_creates_nothing(self, orchestrator, ctx, make_analysis, test_db):
        analysis_id = await make_analysis(THREE_PAIRS)

        first = await orchestrator.run_analysis(ctx, analysis_id)
        second = await orchestrator.run_analysis(ctx, analysis_id)

        assert first.created == 3
        assert second.created == 0
        assert second.unchanged == 3
        assert await _conflict_count(test_db) == 3

    async def test_rerun_does_not_reemit_conflict_new(self, orchestrator, ctx, make_analysis, broadcaster):
        analysis_id = await make_analysis(THREE_PAIRS)
        await orchestrator.run_analysis(ctx, analysis_id)

        events = await broadcaster.subscribe(analysis_topic(analysis_id))
        await orchestrator.run_analysis(ctx, analysis_id)
        assert EventName.CONFLICT_NEW not in [e.name for e in events.pending()]

    async def test_open_conflict_is_refreshed(self, orchestrator, ctx, make_analysis, repository):
        first_id = await make_analysis([("P1", "U1"), ("P2", "U1")])
        await orchestrator.run_analysis(ctx, first_id)
        before = await repository.find_by_natural_key(ORGANIZATION_ID, "DUPLICATE_UPC:U1")
        version = before.version

        second_id = await make_analysis([("P1", "U1"), ("P2", "U1"), ("P3", "U1")])
        outcome = await orchestrator.run_analysis(ctx, second_id)

        assert outcome.updated == 1
        after = await repository.find_by_natural_key(ORGANIZATION_ID, "DUPLICATE_UPC:U1")
        assert after.related_product_ids == ["P1", "P2", "P3"]
        assert after.severity == Severity.MEDIUM.value
        assert after.cost_impact == 300.0
        assert after.status == ConflictStatus.NEW.value
        assert after.version == version

    async def test_terminal_conflicts_are_untouched(self, orchestrator, lifecycle, ctx, make_analysis, repository):
        first_id = await make_analysis([("P1", "U1"), ("P2", "U1")])
        await orchestrator.run_analysis(ctx, first_id)
        conflict = await repository.find_by_natural_key(ORGANIZATION_ID, "DUPLICATE_UPC:U1")
        await lifecycle.reject(ctx, str(conflict.conflict_id), "pack variants")

        second_id = await make_analysis([("P1", "U1"), ("P2", "U1"), ("P3", "U1")])
        outcome = await orchestrator.run_analysis(ctx, second_id)

        assert outcome.created == 0
        assert outcome.unchanged == 1
        after = await repository.find_by_natural_key(ORGANIZATION_ID, "DUPLICATE_UPC:U1")
        assert after.status == ConflictStatus.REJECTED.value
        assert after.related_product_ids == ["P1", "P2"]


# ── Chunking ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestChunking:
    async def test_progress_is_monotonic_per_chunk(self, test_db, ctx, make_analysis):
        broadcaster = InMemoryBroadcaster()
        orchestrator = _build(test_db, broadcaster, chunk_size=1)
        analysis_id = await make_analysis(THREE_PAIRS)
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.created == 3
        received = events.pending()
        assert [e.name for e in received] == [
            EventName.CONFLICT_NEW,
            EventName.ANALYSIS_PROGRESS,
            EventName.CONFLICT_NEW,
            EventName.ANALYSIS_PROGRESS,
            EventName.CONFLICT_NEW,
            EventName.ANALYSIS_PROGRESS,
            EventName.ANALYSIS_COMPLETE,
        ]
        percents = [e.payload["percent"] for e in received if e.name == EventName.ANALYSIS_PROGRESS]
        assert percents == [33, 67, 100]


# ── Failure + cancellation ─────────────────────────────────────────────


@pytest.mark.asyncio
class TestFailures:
    async def test_repository_failure_keeps_earlier_chunks(self, test_db, ctx, make_analysis):
        broadcaster = InMemoryBroadcaster()
        orchestrator = _build(
            test_db, broadcaster, repository=FlakyRepository(test_db, fail_on_call=2), chunk_size=1
        )
        analysis_id = await make_analysis(THREE_PAIRS)
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.FAILED
        assert outcome.failed
        assert outcome.created == 1
        assert outcome.error == "repository unavailable"
        assert await _conflict_count(test_db) == 1

        analysis = await SqlAnalysisStore(test_db).get(ORGANIZATION_ID, analysis_id)
        assert analysis.status == AnalysisStatus.FAILED.value
        assert analysis.error_message == "repository unavailable"
        assert await _audit_actions(test_db, analysis_id) == ["ANALYSIS_FAILED"]

        last = events.pending()[-1]
        assert last.name == EventName.ANALYSIS_FAILED
        assert last.payload["reason"] == "error"
        assert last.payload["conflicts_created"] == 1

    async def test_record_store_failure(self, test_db, ctx, make_analysis, broadcaster):
        orchestrator = _build(test_db, broadcaster, record_store=BrokenRecordStore())
        analysis_id = await make_analysis(THREE_PAIRS)
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.FAILED
        assert outcome.error == "record store unavailable"
        assert await _conflict_count(test_db) == 0
        assert [e.name for e in events.pending()] == [EventName.ANALYSIS_FAILED]

    async def test_retry_after_failure_completes(self, test_db, ctx, make_analysis, orchestrator):
        analysis_id = await make_analysis(THREE_PAIRS)
        flaky = _build(test_db, InMemoryBroadcaster(), repository=FlakyRepository(test_db, 2), chunk_size=1)
        await flaky.run_analysis(ctx, analysis_id)

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.COMPLETED
        assert outcome.created == 2
        assert outcome.unchanged == 1
        assert await _conflict_count(test_db) == 3

    async def test_cancelled_between_chunks(self, test_db, ctx, make_analysis):
        cancel = asyncio.Event()
        broadcaster = CancellingBroadcaster(cancel)
        orchestrator = _build(test_db, broadcaster, chunk_size=1)
        analysis_id = await make_analysis(THREE_PAIRS)
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        outcome = await orchestrator.run_analysis(ctx, analysis_id, cancel_event=cancel)

        assert outcome.status == AnalysisStatus.CANCELLED
        assert outcome.created == 1
        assert await _conflict_count(test_db) == 1
        last = events.pending()[-1]
        assert last.name == EventName.ANALYSIS_FAILED
        assert last.payload["reason"] == "cancelled"

        analysis = await SqlAnalysisStore(test_db).get(ORGANIZATION_ID, analysis_id)
        assert analysis.status == AnalysisStatus.CANCELLED.value

    async def test_detector_crash_ends_run_failed(self, test_db, ctx, make_analysis, broadcaster, monkeypatch):
        def boom(records, policy=None):
            raise RuntimeError("unexpected record shape")

        monkeypatch.setattr(detector, "analyze", boom)
        orchestrator = _build(test_db, broadcaster)
        analysis_id = await make_analysis(THREE_PAIRS)
        events = await broadcaster.subscribe(analysis_topic(analysis_id))

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.FAILED
        assert "unexpected record shape" in outcome.error
        analysis = await SqlAnalysisStore(test_db).get(ORGANIZATION_ID, analysis_id)
        assert analysis.status == AnalysisStatus.FAILED.value
        assert await _audit_actions(test_db, analysis_id) == ["ANALYSIS_FAILED"]
        assert [e.name for e in events.pending()] == [EventName.ANALYSIS_FAILED]

    async def test_unicode_digit_upcs_complete(self, orchestrator, ctx, make_analysis):
        analysis_id = await make_analysis([("P1", "²"), ("P2", "²"), ("P3", "U9"), ("P3", "١٢٣")])

        outcome = await orchestrator.run_analysis(ctx, analysis_id)

        assert outcome.status == AnalysisStatus.COMPLETED
        assert outcome.conflicts_found == 2


# ── Caller errors ──────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestCallerErrors:
    async def test_unknown_analysis(self, orchestrator, ctx, seeded_db):
        with pytest.raises(NotFound):
            await orchestrator.run_analysis(ctx, "00000000-0000-0000-0000-00000000beef")

    async def test_other_organization(self, orchestrator, other_ctx, make_analysis, test_db):
        analysis_id = await make_analysis(THREE_PAIRS)
        with pytest.raises(NotFound):
            await orchestrator.run_analysis(other_ctx, analysis_id)
        assert await _conflict_count(test_db) == 0

    async def test_oversized_batch(self, test_db, ctx, make_analysis, broadcaster):
        orchestrator = _build(test_db, broadcaster, max_batch_records=2)
        analysis_id = await make_analysis(THREE_PAIRS)
        with pytest.raises(ValidationError):
            await orchestrator.run_analysis(ctx, analysis_id)

        analysis = await SqlAnalysisStore(test_db).get(ORGANIZATION_ID, analysis_id)
        assert analysis.status == AnalysisStatus.PENDING.value

    async def test_negative_chunk_size_rejected(self, test_db, broadcaster):
        with pytest.raises(ValueError, match="chunk_size"):
            _build(test_db, broadcaster, chunk_size=-1)
