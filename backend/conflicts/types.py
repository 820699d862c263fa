"""
Shared value types for the conflict engine: enumerations, caller context,
and the outcome containers returned to transport layers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConflictType(str, Enum):
    """Kinds of UPC integrity conflict. Open for extension."""

    DUPLICATE_UPC = "DUPLICATE_UPC"  # one UPC, many products
    MULTI_UPC_PRODUCT = "MULTI_UPC_PRODUCT"  # one product, many UPCs


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


SEVERITY_TO_PRIORITY = {
    Severity.LOW: Priority.LOW,
    Severity.MEDIUM: Priority.MEDIUM,
    Severity.HIGH: Priority.HIGH,
    Severity.CRITICAL: Priority.URGENT,
}


class ConflictStatus(str, Enum):
    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (ConflictStatus.RESOLVED, ConflictStatus.REJECTED)


class ResolutionAction(str, Enum):
    KEEP_EXISTING = "KEEP_EXISTING"
    USE_NEW = "USE_NEW"
    MANUAL = "MANUAL"
    IGNORE = "IGNORE"


class AnalysisStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class EngineContext:
    """Caller identity passed explicitly into every engine operation."""

    organization_id: str
    user_id: str | None = None


@dataclass
class AnalysisOutcome:
    """Result of one detection run."""

    analysis_id: str
    status: AnalysisStatus
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts_found: int = 0
    error: str | None = None
    retryable: bool = False
    statistics: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status in (AnalysisStatus.FAILED, AnalysisStatus.CANCELLED)

    def counts(self) -> dict[str, int]:
        return {
            "conflicts_created": self.created,
            "conflicts_updated": self.updated,
            "conflicts_unchanged": self.unchanged,
        }


@dataclass(frozen=True)
class BulkAssignFailure:
    conflict_id: str
    code: str
    message: str


@dataclass
class BulkAssignResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[BulkAssignFailure] = field(default_factory=list)
