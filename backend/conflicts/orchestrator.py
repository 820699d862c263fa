"""
Analysis Orchestrator — one detection run over an ingested batch.

Pipeline:
  1. Load the batch from the record store
  2. Detect candidates (pure, in-process)
  3. Reconcile candidates with the repository chunk by chunk; each chunk
     commits on its own and is followed by conflict:new / analysis:progress
  4. Mark the analysis COMPLETED, audit, emit analysis:complete

A failure aborts the run: the open chunk rolls back, earlier chunks stay
committed and the run ends FAILED with partial counts. Re-running the same
analysis is safe because reconciliation is keyed by natural key.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from conflicts import detector
from conflicts.audit import AuditAction, AuditLogEntry, AuditSink, SqlAuditSink
from conflicts.detector import ConflictCandidate, ScoringPolicy
from conflicts.repository import RecordStore, SqlAnalysisStore, SqlConflictRepository, SqlRecordStore
from conflicts.types import AnalysisOutcome, AnalysisStatus, EngineContext, UpsertOutcome
from core.errors import ConcurrentModification, DependencyFailure, NotFound, ValidationError
from db.models import Analysis
from events import contracts
from events.broadcaster import EventBroadcaster
from events.contracts import EventName

logger = structlog.get_logger()


def _chunks(items: list[ConflictCandidate], size: int) -> list[list[ConflictCandidate]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class AnalysisOrchestrator:
    def __init__(
        self,
        record_store: RecordStore,
        analysis_store: SqlAnalysisStore,
        repository: SqlConflictRepository,
        audit: AuditSink,
        broadcaster: EventBroadcaster,
        *,
        policy: ScoringPolicy | None = None,
        max_batch_records: int = 250_000,
        chunk_size: int = 0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        if chunk_size < 0:
            raise ValueError(f"chunk_size must be >= 0, got {chunk_size}")
        self.record_store = record_store
        self.analysis_store = analysis_store
        self.repository = repository
        self.audit = audit
        self.broadcaster = broadcaster
        self.policy = policy or detector.DEFAULT_POLICY
        self.max_batch_records = max_batch_records
        self.chunk_size = chunk_size
        self.clock = clock

    @classmethod
    def for_session(cls, db: AsyncSession, broadcaster: EventBroadcaster, settings) -> "AnalysisOrchestrator":
        """Wire the SQL adapters around one session, configured from settings."""
        return cls(
            SqlRecordStore(db),
            SqlAnalysisStore(db),
            SqlConflictRepository(db),
            SqlAuditSink(db),
            broadcaster,
            policy=ScoringPolicy.from_settings(settings),
            max_batch_records=settings.max_batch_records,
            chunk_size=settings.analysis_chunk_size,
        )

    async def run_analysis(
        self,
        ctx: EngineContext,
        analysis_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AnalysisOutcome:
        """
        Detect and reconcile conflicts for one analysis.

        Raises NotFound for an unknown or foreign analysis and ValidationError
        for an oversized batch. Dependency failures and cancellation do not
        raise: they are reported through the returned outcome.
        """
        analysis = await self.analysis_store.get(ctx.organization_id, analysis_id)
        if analysis is None:
            raise NotFound("Analysis not found", analysis_id=str(analysis_id))

        outcome = AnalysisOutcome(analysis_id=str(analysis.analysis_id), status=AnalysisStatus.PROCESSING)
        log = logger.bind(analysis_id=outcome.analysis_id, organization_id=ctx.organization_id)

        try:
            records = await self.record_store.list_records(ctx.organization_id, outcome.analysis_id)
        except DependencyFailure as exc:
            return await self._fail(ctx, outcome, exc.message)

        if len(records) > self.max_batch_records:
            raise ValidationError(
                f"Batch has {len(records)} records; the limit is {self.max_batch_records}",
                analysis_id=outcome.analysis_id,
            )

        try:
            await self.analysis_store.mark(
                analysis,
                AnalysisStatus.PROCESSING,
                progress=0,
                total_records=len(records),
                started_at=self.clock(),
                completed_at=None,
                error_message=None,
            )
            await self.repository.commit()
        except DependencyFailure as exc:
            return await self._fail(ctx, outcome, exc.message)
        log.info("conflicts.analysis.started", records=len(records))

        try:
            result = detector.analyze(records, self.policy)
        except Exception as exc:
            # PROCESSING is committed; every run ends in a terminal state.
            log.exception("conflicts.analysis.detection_crashed")
            return await self._fail(ctx, outcome, f"Detection failed: {exc}")
        candidates = result.candidates
        outcome.statistics = result.statistics
        log.info(
            "conflicts.analysis.detected",
            candidates=len(candidates),
            duplicate_upcs=result.statistics["duplicate_upcs"],
            multi_upc_products=result.statistics["multi_upc_products"],
        )

        chunks = _chunks(candidates, self.chunk_size or len(candidates) or 1)
        for index, chunk in enumerate(chunks, start=1):
            if cancel_event is not None and cancel_event.is_set():
                return await self._fail(ctx, outcome, "cancelled", cancelled=True)

            percent = round(index / len(chunks) * 100)
            try:
                created, tally = await self._reconcile(ctx, analysis, chunk)
                analysis.progress = percent
                await self.repository.commit()
            except (DependencyFailure, ConcurrentModification) as exc:
                outcome.retryable = isinstance(exc, ConcurrentModification)
                return await self._fail(ctx, outcome, exc.message)

            outcome.created += tally[UpsertOutcome.CREATED]
            outcome.updated += tally[UpsertOutcome.UPDATED]
            outcome.unchanged += tally[UpsertOutcome.UNCHANGED]
            for conflict in created:
                await self._emit(ctx, outcome.analysis_id, EventName.CONFLICT_NEW, contracts.conflict_new(conflict))
            await self._emit(
                ctx,
                outcome.analysis_id,
                EventName.ANALYSIS_PROGRESS,
                contracts.analysis_progress(outcome.analysis_id, percent),
            )
            log.debug("conflicts.analysis.chunk_committed", chunk=index, chunks=len(chunks), created=len(created))

        if not chunks:
            await self._emit(
                ctx, outcome.analysis_id, EventName.ANALYSIS_PROGRESS, contracts.analysis_progress(outcome.analysis_id, 100)
            )

        outcome.status = AnalysisStatus.COMPLETED
        outcome.conflicts_found = len(candidates)
        try:
            await self.analysis_store.mark(
                analysis,
                AnalysisStatus.COMPLETED,
                progress=100,
                conflicts_found=outcome.conflicts_found,
                statistics={**outcome.statistics, **outcome.counts()},
                completed_at=self.clock(),
            )
            await self.audit.append(
                AuditLogEntry(
                    action=AuditAction.ANALYSIS_COMPLETED,
                    resource_type="analysis",
                    resource_id=outcome.analysis_id,
                    organization_id=ctx.organization_id,
                    user_id=ctx.user_id,
                    details={"conflicts_found": outcome.conflicts_found, **outcome.counts()},
                )
            )
            await self.repository.commit()
        except DependencyFailure as exc:
            return await self._fail(ctx, outcome, exc.message)

        log.info("conflicts.analysis.completed", conflicts_found=outcome.conflicts_found, **outcome.counts())
        await self._emit(
            ctx,
            outcome.analysis_id,
            EventName.ANALYSIS_COMPLETE,
            contracts.analysis_complete(outcome.analysis_id, outcome.conflicts_found, outcome.counts()),
        )
        return outcome

    # ── Internals ───────────────────────────────────────────────────────

    async def _reconcile(
        self,
        ctx: EngineContext,
        analysis: Analysis,
        chunk: list[ConflictCandidate],
    ) -> tuple[list[Any], dict[UpsertOutcome, int]]:
        created = []
        tally = {UpsertOutcome.CREATED: 0, UpsertOutcome.UPDATED: 0, UpsertOutcome.UNCHANGED: 0}
        for candidate in chunk:
            conflict, result = await self.repository.upsert_candidate(
                ctx.organization_id, str(analysis.analysis_id), candidate
            )
            tally[result] += 1
            if result == UpsertOutcome.CREATED:
                created.append(conflict)
        return created, tally

    async def _fail(
        self,
        ctx: EngineContext,
        outcome: AnalysisOutcome,
        error: str,
        *,
        cancelled: bool = False,
    ) -> AnalysisOutcome:
        outcome.status = AnalysisStatus.CANCELLED if cancelled else AnalysisStatus.FAILED
        outcome.error = error
        reason = "cancelled" if cancelled else "error"

        await self.repository.rollback()
        try:
            analysis = await self.analysis_store.get(ctx.organization_id, outcome.analysis_id)
            if analysis is not None:
                await self.analysis_store.mark(
                    analysis,
                    outcome.status,
                    error_message=error,
                    completed_at=self.clock(),
                    statistics={**outcome.statistics, **outcome.counts()},
                )
            await self.audit.append(
                AuditLogEntry(
                    action=AuditAction.ANALYSIS_FAILED,
                    resource_type="analysis",
                    resource_id=outcome.analysis_id,
                    organization_id=ctx.organization_id,
                    user_id=ctx.user_id,
                    details={"error": error, "reason": reason, **outcome.counts()},
                )
            )
            await self.repository.commit()
        except DependencyFailure as exc:
            await self.repository.rollback()
            logger.error(
                "conflicts.analysis.status_write_failed",
                analysis_id=outcome.analysis_id,
                error=exc.message,
            )

        report = logger.warning if cancelled else logger.error
        report(
            "conflicts.analysis.failed",
            analysis_id=outcome.analysis_id,
            organization_id=ctx.organization_id,
            reason=reason,
            error=error,
            **outcome.counts(),
        )
        await self._emit(
            ctx,
            outcome.analysis_id,
            EventName.ANALYSIS_FAILED,
            contracts.analysis_failed(outcome.analysis_id, error, outcome.counts(), reason=reason),
        )
        return outcome

    async def _emit(self, ctx: EngineContext, analysis_id: str, name: EventName, payload: dict[str, Any]) -> None:
        """Publish to the analysis topic, then the organization topic."""
        for topic in (contracts.analysis_topic(analysis_id), contracts.org_topic(ctx.organization_id)):
            try:
                await self.broadcaster.publish(topic, name, payload)
            except DependencyFailure as exc:
                logger.warning("conflicts.analysis.publish_failed", topic=topic, event=name.value, error=exc.message)
