"""
Storage adapters for the conflict engine.

  - SqlRecordStore: read-only access to a batch's ingested rows
  - SqlAnalysisStore: run status / progress bookkeeping on ``analyses``
  - SqlConflictRepository: conflict persistence with natural-key upsert and
    compare-and-set lifecycle writes

All three share the caller's AsyncSession; transaction boundaries belong to
the orchestrator and lifecycle manager. SQLAlchemy errors are surfaced as
DependencyFailure so callers never depend on driver exception types.
"""

import uuid
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from conflicts.detector import ConflictCandidate, Record
from conflicts.types import AnalysisStatus, ConflictStatus, Severity, UpsertOutcome
from core.errors import ConcurrentModification, DependencyFailure, NotFound
from db.models import Analysis, AnalysisRecord, Conflict

logger = structlog.get_logger()

TERMINAL_STATUSES = [s.value for s in ConflictStatus if s.is_terminal]


def parse_id(value: Any) -> uuid.UUID | None:
    """Parse an external identifier; malformed ids behave like unknown ids."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class RecordStore(Protocol):
    async def list_records(self, organization_id: str, analysis_id: str) -> list[Record]: ...


# ──────────────────────────────────────────────────────────────────────────
# Records + Analyses
# ──────────────────────────────────────────────────────────────────────────


class SqlRecordStore:
    def __init__(self, db: AsyncSession, page_size: int = 5000):
        self.db = db
        self.page_size = page_size

    async def list_records(self, organization_id: str, analysis_id: str) -> list[Record]:
        """Load the complete batch, paging through ``analysis_records``."""
        org_uuid, analysis_uuid = parse_id(organization_id), parse_id(analysis_id)
        if org_uuid is None or analysis_uuid is None:
            raise NotFound("Analysis not found", analysis_id=str(analysis_id))

        try:
            owner = await self.db.execute(
                select(Analysis.analysis_id).where(
                    Analysis.analysis_id == analysis_uuid,
                    Analysis.organization_id == org_uuid,
                )
            )
            if owner.scalar_one_or_none() is None:
                raise NotFound("Analysis not found", analysis_id=str(analysis_id))

            records: list[Record] = []
            offset = 0
            while True:
                result = await self.db.execute(
                    select(AnalysisRecord)
                    .where(AnalysisRecord.analysis_id == analysis_uuid)
                    .order_by(AnalysisRecord.row_number, AnalysisRecord.record_id)
                    .offset(offset)
                    .limit(self.page_size)
                )
                page = result.scalars().all()
                records.extend(
                    Record(
                        product_id=row.product_id,
                        upc=row.upc,
                        warehouse_id=row.warehouse_id,
                        location=row.location,
                        raw=row.raw_data or {},
                    )
                    for row in page
                )
                if len(page) < self.page_size:
                    break
                offset += self.page_size
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to load records: {exc}", analysis_id=str(analysis_id)) from exc
        return records


class SqlAnalysisStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, organization_id: str, analysis_id: str) -> Analysis | None:
        org_uuid, analysis_uuid = parse_id(organization_id), parse_id(analysis_id)
        if org_uuid is None or analysis_uuid is None:
            return None
        try:
            result = await self.db.execute(
                select(Analysis).where(
                    Analysis.analysis_id == analysis_uuid,
                    Analysis.organization_id == org_uuid,
                )
            )
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to load analysis: {exc}", analysis_id=str(analysis_id)) from exc
        return result.scalar_one_or_none()

    async def mark(self, analysis: Analysis, status: AnalysisStatus, **fields: Any) -> None:
        analysis.status = status.value
        for name, value in fields.items():
            setattr(analysis, name, value)
        try:
            await self.db.flush()
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to update analysis: {exc}", analysis_id=str(analysis.analysis_id)) from exc


# ──────────────────────────────────────────────────────────────────────────
# Conflicts
# ──────────────────────────────────────────────────────────────────────────


def _metadata_from_candidate(candidate: ConflictCandidate) -> dict[str, Any]:
    return {
        "upc": candidate.upc,
        "product_id": candidate.product_id,
        "related_product_ids": list(candidate.related_product_ids),
        "related_upcs": list(candidate.related_upcs),
        "locations": list(candidate.locations),
        "warehouses": list(candidate.warehouses),
        "severity": candidate.severity.value,
        "priority": candidate.priority.value,
        "cost_impact": candidate.cost_impact,
        "description": candidate.description,
    }


class SqlConflictRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Reads ───────────────────────────────────────────────────────────

    async def find_by_id(self, organization_id: str, conflict_id: str) -> Conflict | None:
        org_uuid, conflict_uuid = parse_id(organization_id), parse_id(conflict_id)
        if org_uuid is None or conflict_uuid is None:
            return None
        try:
            result = await self.db.execute(
                select(Conflict).where(
                    Conflict.conflict_id == conflict_uuid,
                    Conflict.organization_id == org_uuid,
                )
            )
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to load conflict: {exc}", conflict_id=str(conflict_id)) from exc
        return result.scalar_one_or_none()

    async def find_by_natural_key(self, organization_id: str, natural_key: str) -> Conflict | None:
        org_uuid = parse_id(organization_id)
        if org_uuid is None:
            return None
        try:
            result = await self.db.execute(
                select(Conflict).where(
                    Conflict.organization_id == org_uuid,
                    Conflict.natural_key == natural_key,
                )
            )
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to load conflict: {exc}", natural_key=natural_key) from exc
        return result.scalar_one_or_none()

    async def list_conflicts(
        self,
        organization_id: str,
        *,
        status: str | None = None,
        severity: str | None = None,
        conflict_type: str | None = None,
        assigned_to: str | None = None,
        analysis_id: str | None = None,
        search: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[Conflict]:
        org_uuid = parse_id(organization_id)
        if org_uuid is None:
            return []
        query = select(Conflict).where(Conflict.organization_id == org_uuid)
        if status:
            query = query.where(Conflict.status == status)
        if severity:
            query = query.where(Conflict.severity == severity)
        if conflict_type:
            query = query.where(Conflict.conflict_type == conflict_type)
        if assigned_to:
            query = query.where(Conflict.assigned_to == assigned_to)
        if analysis_id:
            analysis_uuid = parse_id(analysis_id)
            if analysis_uuid is None:
                return []
            query = query.where(Conflict.analysis_id == analysis_uuid)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    Conflict.upc.ilike(pattern),
                    Conflict.product_id.ilike(pattern),
                    Conflict.description.ilike(pattern),
                )
            )
        query = query.order_by(Conflict.created_at.desc(), Conflict.natural_key).offset(skip).limit(limit)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to list conflicts: {exc}") from exc
        return list(result.scalars().all())

    async def summarize(self, organization_id: str) -> dict[str, Any]:
        """Counts by status / severity / type and open cost impact."""
        org_uuid = parse_id(organization_id)
        by_status = {s.value: 0 for s in ConflictStatus}
        by_severity = {s.value: 0 for s in Severity}
        by_type: dict[str, int] = {}
        open_cost = 0.0
        if org_uuid is not None:
            try:
                rows = await self.db.execute(
                    select(
                        Conflict.status,
                        Conflict.severity,
                        Conflict.conflict_type,
                        func.count().label("n"),
                        func.coalesce(func.sum(Conflict.cost_impact), 0).label("cost"),
                    )
                    .where(Conflict.organization_id == org_uuid)
                    .group_by(Conflict.status, Conflict.severity, Conflict.conflict_type)
                )
            except SQLAlchemyError as exc:
                raise DependencyFailure(f"Failed to summarize conflicts: {exc}") from exc
            for row in rows.all():
                by_status[row.status] = by_status.get(row.status, 0) + row.n
                by_severity[row.severity] = by_severity.get(row.severity, 0) + row.n
                by_type[row.conflict_type] = by_type.get(row.conflict_type, 0) + row.n
                if row.status not in TERMINAL_STATUSES:
                    open_cost += float(row.cost or 0)

        total = sum(by_status.values())
        resolved = by_status[ConflictStatus.RESOLVED.value]
        return {
            "total": total,
            "by_status": by_status,
            "by_severity": by_severity,
            "by_type": by_type,
            "open_cost_impact": round(open_cost, 2),
            "resolution_rate": round(resolved / total * 100) if total else 0,
        }

    # ── Writes ──────────────────────────────────────────────────────────

    async def insert(self, conflict: Conflict) -> Conflict:
        self.db.add(conflict)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise ConcurrentModification(
                "Conflict with this natural key was created concurrently",
                natural_key=conflict.natural_key,
            ) from exc
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to insert conflict: {exc}", natural_key=conflict.natural_key) from exc
        return conflict

    async def upsert_candidate(
        self,
        organization_id: str,
        analysis_id: str,
        candidate: ConflictCandidate,
    ) -> tuple[Conflict, UpsertOutcome]:
        """
        Reconcile one detected candidate with storage, keyed by natural key.

        Absent → inserted as NEW. Present and open → group metadata and score
        refreshed. Present and RESOLVED/REJECTED → left untouched.
        """
        existing = await self.find_by_natural_key(organization_id, candidate.natural_key)
        metadata = _metadata_from_candidate(candidate)

        if existing is None:
            conflict = Conflict(
                organization_id=parse_id(organization_id),
                analysis_id=parse_id(analysis_id),
                conflict_type=candidate.conflict_type.value,
                natural_key=candidate.natural_key,
                status=ConflictStatus.NEW.value,
                version=1,
                **metadata,
            )
            return await self.insert(conflict), UpsertOutcome.CREATED

        if ConflictStatus(existing.status).is_terminal:
            return existing, UpsertOutcome.UNCHANGED

        if all(getattr(existing, name) == value for name, value in metadata.items()):
            return existing, UpsertOutcome.UNCHANGED

        try:
            result = await self.db.execute(
                update(Conflict)
                .where(
                    Conflict.conflict_id == existing.conflict_id,
                    Conflict.status.notin_(TERMINAL_STATUSES),
                )
                .values(**metadata, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Closed between our read and write; terminal rows are never reopened.
                await self.db.refresh(existing)
                return existing, UpsertOutcome.UNCHANGED
            await self.db.refresh(existing)
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to refresh conflict: {exc}", natural_key=candidate.natural_key) from exc
        return existing, UpsertOutcome.UPDATED

    async def compare_and_set(
        self,
        conflict: Conflict,
        *,
        expected_status: ConflictStatus,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Conflict:
        """Apply lifecycle changes only if status and version are still as read."""
        try:
            result = await self.db.execute(
                update(Conflict)
                .where(
                    Conflict.conflict_id == conflict.conflict_id,
                    Conflict.organization_id == conflict.organization_id,
                    Conflict.status == expected_status.value,
                    Conflict.version == expected_version,
                )
                .values(**changes, version=expected_version + 1, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to update conflict: {exc}", conflict_id=str(conflict.conflict_id)) from exc

        if result.rowcount != 1:
            raise ConcurrentModification(
                "Conflict was modified concurrently",
                conflict_id=str(conflict.conflict_id),
                expected_status=expected_status.value,
                expected_version=expected_version,
            )
        await self.db.refresh(conflict)
        return conflict

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise DependencyFailure(f"Commit failed: {exc}") from exc

    async def rollback(self) -> None:
        await self.db.rollback()
