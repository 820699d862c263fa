"""
Audit trail for engine state changes.

Entries are appended inside the same database transaction as the change
they describe, so a committed transition always has its audit row.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import DependencyFailure
from db.models import AuditLog

logger = structlog.get_logger()


class AuditAction(str, Enum):
    CONFLICT_ASSIGNED = "CONFLICT_ASSIGNED"
    CONFLICT_WORK_STARTED = "CONFLICT_WORK_STARTED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    CONFLICT_REJECTED = "CONFLICT_REJECTED"
    ANALYSIS_COMPLETED = "ANALYSIS_COMPLETED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"


@dataclass(frozen=True)
class AuditLogEntry:
    action: AuditAction
    resource_type: str
    resource_id: str
    organization_id: str
    user_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


class AuditSink(Protocol):
    async def append(self, entry: AuditLogEntry) -> None: ...


class SqlAuditSink:
    """Writes entries to ``audit_log`` through the caller's session (no commit)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        self.db.add(
            AuditLog(
                organization_id=uuid.UUID(str(entry.organization_id)),
                user_id=entry.user_id,
                action=entry.action.value,
                resource_type=entry.resource_type,
                resource_id=str(entry.resource_id),
                details=entry.details,
                timestamp=entry.timestamp,
            )
        )
        try:
            await self.db.flush()
        except SQLAlchemyError as exc:
            raise DependencyFailure(f"Failed to append audit entry: {exc}", action=entry.action.value) from exc
        logger.info(
            "audit.appended",
            action=entry.action.value,
            resource_type=entry.resource_type,
            resource_id=str(entry.resource_id),
            organization_id=str(entry.organization_id),
            user_id=entry.user_id,
        )
