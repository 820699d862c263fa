"""
Conflict Lifecycle — assignment, work, resolution and rejection.

State machine:
  NEW ──► ASSIGNED ──► IN_PROGRESS ──► RESOLVED
   │         │  ▲          │
   │         └──┘          └─────────► REJECTED
   ├──────────────────► IN_PROGRESS
   └──────────────────────────────────► REJECTED
  ASSIGNED ──► RESOLVED | REJECTED

Every transition writes the row change and one audit entry in a single
commit, then publishes one event on the organization topic. Writes are
compare-and-set on (status, version) so concurrent callers on the same
conflict cannot both succeed.
"""

import asyncio
import weakref
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from conflicts.audit import AuditAction, AuditLogEntry, AuditSink
from conflicts.repository import SqlConflictRepository
from conflicts.types import (
    BulkAssignFailure,
    BulkAssignResult,
    ConflictStatus,
    EngineContext,
    ResolutionAction,
)
from core.errors import ConflictEngineError, DependencyFailure, InvalidTransition, NotFound, ValidationError
from db.models import Conflict
from events import contracts
from events.broadcaster import EventBroadcaster
from events.contracts import EventName

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[ConflictStatus, frozenset[ConflictStatus]] = {
    ConflictStatus.NEW: frozenset({ConflictStatus.ASSIGNED, ConflictStatus.IN_PROGRESS, ConflictStatus.REJECTED}),
    ConflictStatus.ASSIGNED: frozenset(
        {ConflictStatus.ASSIGNED, ConflictStatus.IN_PROGRESS, ConflictStatus.RESOLVED, ConflictStatus.REJECTED}
    ),
    ConflictStatus.IN_PROGRESS: frozenset({ConflictStatus.RESOLVED, ConflictStatus.REJECTED}),
    ConflictStatus.RESOLVED: frozenset(),
    ConflictStatus.REJECTED: frozenset(),
}

# Process-wide so that managers built per request still serialize on one conflict.
_conflict_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def can_transition(current: ConflictStatus, target: ConflictStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _lock_for(conflict_id: str) -> asyncio.Lock:
    lock = _conflict_locks.get(conflict_id)
    if lock is None:
        lock = asyncio.Lock()
        _conflict_locks[conflict_id] = lock
    return lock


class LifecycleManager:
    def __init__(
        self,
        repository: SqlConflictRepository,
        audit: AuditSink,
        broadcaster: EventBroadcaster,
        *,
        max_bulk_assign: int = 100,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.repository = repository
        self.audit = audit
        self.broadcaster = broadcaster
        self.max_bulk_assign = max_bulk_assign
        self.clock = clock

    # ── Operations ──────────────────────────────────────────────────────

    async def assign(self, ctx: EngineContext, conflict_id: str, assignee_id: str) -> Conflict:
        """Assign a NEW or ASSIGNED conflict to a reviewer."""
        assignee_id = (assignee_id or "").strip()
        if not assignee_id:
            raise ValidationError("assignee_id is required", conflict_id=str(conflict_id))

        async with _lock_for(str(conflict_id)):
            conflict = await self._load(ctx, conflict_id)
            current = self._check(conflict, ConflictStatus.ASSIGNED)

            # Re-assigning to the current assignee leaves the row as is.
            if not (current == ConflictStatus.ASSIGNED and conflict.assigned_to == assignee_id):
                await self.repository.compare_and_set(
                    conflict,
                    expected_status=current,
                    expected_version=conflict.version,
                    changes={
                        "status": ConflictStatus.ASSIGNED.value,
                        "assigned_to": assignee_id,
                        "assigned_at": self.clock(),
                    },
                )

            return await self._commit_and_emit(
                ctx,
                conflict,
                action=AuditAction.CONFLICT_ASSIGNED,
                event=EventName.CONFLICT_ASSIGNED,
                payload=contracts.conflict_assigned,
                details={"from_status": current.value, "assigned_to": assignee_id},
            )

    async def bulk_assign(self, ctx: EngineContext, conflict_ids: list[str], assignee_id: str) -> BulkAssignResult:
        """
        Assign each ID independently. Per-item errors are collected, never
        raised; only a malformed request raises ValidationError.
        """
        if not conflict_ids:
            raise ValidationError("conflict_ids must not be empty")
        if len(conflict_ids) > self.max_bulk_assign:
            raise ValidationError(
                f"At most {self.max_bulk_assign} conflicts can be assigned at once",
                requested=len(conflict_ids),
            )
        if not (assignee_id or "").strip():
            raise ValidationError("assignee_id is required")

        result = BulkAssignResult()
        for conflict_id in conflict_ids:
            try:
                await self.assign(ctx, conflict_id, assignee_id)
            except ConflictEngineError as exc:
                if isinstance(exc, DependencyFailure):
                    await self.repository.rollback()
                result.failed.append(BulkAssignFailure(conflict_id=str(conflict_id), code=exc.code, message=exc.message))
            else:
                result.succeeded.append(str(conflict_id))

        logger.info(
            "conflicts.lifecycle.bulk_assigned",
            organization_id=ctx.organization_id,
            assignee=assignee_id,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    async def start_work(self, ctx: EngineContext, conflict_id: str) -> Conflict:
        """Move a NEW or ASSIGNED conflict to IN_PROGRESS; self-assign if unassigned."""
        async with _lock_for(str(conflict_id)):
            conflict = await self._load(ctx, conflict_id)
            current = self._check(conflict, ConflictStatus.IN_PROGRESS)

            changes: dict[str, Any] = {"status": ConflictStatus.IN_PROGRESS.value}
            if not conflict.assigned_to and ctx.user_id:
                changes["assigned_to"] = ctx.user_id
                changes["assigned_at"] = self.clock()

            await self.repository.compare_and_set(
                conflict, expected_status=current, expected_version=conflict.version, changes=changes
            )
            return await self._commit_and_emit(
                ctx,
                conflict,
                action=AuditAction.CONFLICT_WORK_STARTED,
                event=EventName.CONFLICT_IN_PROGRESS,
                payload=contracts.conflict_in_progress,
                details={"from_status": current.value, "assigned_to": conflict.assigned_to},
            )

    async def resolve(
        self,
        ctx: EngineContext,
        conflict_id: str,
        resolution: ResolutionAction | str,
        notes: str | None = None,
    ) -> Conflict:
        try:
            action = ResolutionAction(resolution)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown resolution '{resolution}'",
                allowed=[a.value for a in ResolutionAction],
            ) from exc

        async with _lock_for(str(conflict_id)):
            conflict = await self._load(ctx, conflict_id)
            current = self._check(conflict, ConflictStatus.RESOLVED)

            await self.repository.compare_and_set(
                conflict,
                expected_status=current,
                expected_version=conflict.version,
                changes={
                    "status": ConflictStatus.RESOLVED.value,
                    "resolved_by": ctx.user_id,
                    "resolved_at": self.clock(),
                    "resolution": action.value,
                    "resolution_notes": notes,
                },
            )
            return await self._commit_and_emit(
                ctx,
                conflict,
                action=AuditAction.CONFLICT_RESOLVED,
                event=EventName.CONFLICT_RESOLVED,
                payload=contracts.conflict_resolved,
                details={"from_status": current.value, "resolution": action.value, "notes": notes},
            )

    async def reject(self, ctx: EngineContext, conflict_id: str, notes: str | None = None) -> Conflict:
        async with _lock_for(str(conflict_id)):
            conflict = await self._load(ctx, conflict_id)
            current = self._check(conflict, ConflictStatus.REJECTED)

            await self.repository.compare_and_set(
                conflict,
                expected_status=current,
                expected_version=conflict.version,
                changes={
                    "status": ConflictStatus.REJECTED.value,
                    "resolved_by": ctx.user_id,
                    "resolved_at": self.clock(),
                    "resolution_notes": notes,
                },
            )
            return await self._commit_and_emit(
                ctx,
                conflict,
                action=AuditAction.CONFLICT_REJECTED,
                event=EventName.CONFLICT_REJECTED,
                payload=contracts.conflict_rejected,
                details={"from_status": current.value, "notes": notes},
            )

    # ── Internals ───────────────────────────────────────────────────────

    async def _load(self, ctx: EngineContext, conflict_id: str) -> Conflict:
        conflict = await self.repository.find_by_id(ctx.organization_id, conflict_id)
        if conflict is None:
            raise NotFound("Conflict not found", conflict_id=str(conflict_id))
        return conflict

    @staticmethod
    def _check(conflict: Conflict, target: ConflictStatus) -> ConflictStatus:
        current = ConflictStatus(conflict.status)
        if not can_transition(current, target):
            raise InvalidTransition(
                f"Cannot move conflict from {current.value} to {target.value}",
                conflict_id=str(conflict.conflict_id),
                from_status=current.value,
                to_status=target.value,
            )
        return current

    async def _commit_and_emit(
        self,
        ctx: EngineContext,
        conflict: Conflict,
        *,
        action: AuditAction,
        event: EventName,
        payload: Callable[[Conflict], dict[str, Any]],
        details: dict[str, Any],
    ) -> Conflict:
        await self.audit.append(
            AuditLogEntry(
                action=action,
                resource_type="conflict",
                resource_id=str(conflict.conflict_id),
                organization_id=ctx.organization_id,
                user_id=ctx.user_id,
                details={"to_status": conflict.status, **details},
            )
        )
        await self.repository.commit()

        logger.info(
            "conflicts.lifecycle.transition",
            conflict_id=str(conflict.conflict_id),
            organization_id=ctx.organization_id,
            user_id=ctx.user_id,
            action=action.value,
            status=conflict.status,
            version=conflict.version,
        )

        try:
            await self.broadcaster.publish(contracts.org_topic(ctx.organization_id), event, payload(conflict))
        except DependencyFailure as exc:
            # The transition is committed; subscribers reconcile from storage.
            logger.warning(
                "conflicts.lifecycle.publish_failed",
                conflict_id=str(conflict.conflict_id),
                event=event.value,
                error=exc.message,
            )
        return conflict
