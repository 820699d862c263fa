"""
UPC Conflict Engine Database Models

5 tables for the conflict detection platform.
Multi-tenant via organization_id on all tables.

Tables:
  1. organizations     - Tenant organizations
  2. analyses          - One uploaded batch and its detection run state
  3. analysis_records  - Normalized ingested rows (immutable)
  4. conflicts         - Detected UPC/product conflicts + lifecycle state
  5. audit_log         - Append-only trail of every state change
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from conflicts.types import AnalysisStatus, ConflictStatus, ConflictType, Priority, ResolutionAction, Severity
from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ─── 1. Organizations ──────────────────────────────────────────────────────


class Organization(Base):
    __tablename__ = "organizations"

    organization_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    analyses = relationship("Analysis", back_populates="organization", cascade="all, delete-orphan")


# ─── 2. Analyses ───────────────────────────────────────────────────────────


class Analysis(Base):
    __tablename__ = "analyses"

    analysis_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    file_name = Column(String(255))
    status = Column(String(20), nullable=False, default=AnalysisStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)
    total_records = Column(Integer, nullable=False, default=0)
    conflicts_found = Column(Integer, nullable=False, default=0)
    statistics = Column(JSON, default=dict)
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_analyses_org_status", "organization_id", "status"),
        CheckConstraint(_in_clause("status", AnalysisStatus), name="ck_analysis_status"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_analysis_progress"),
    )

    organization = relationship("Organization", back_populates="analyses")
    records = relationship("AnalysisRecord", back_populates="analysis", cascade="all, delete-orphan")


# ─── 3. Analysis Records ───────────────────────────────────────────────────


class AnalysisRecord(Base):
    """One normalized ingested row. Written once by ingestion, read-only after."""

    __tablename__ = "analysis_records"

    record_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    analysis_id = Column(GUID(), ForeignKey("analyses.analysis_id"), nullable=False)
    row_number = Column(Integer, nullable=False, default=0)
    product_id = Column(String(255))
    warehouse_id = Column(String(255))
    upc = Column(String(64))
    location = Column(String(255))
    raw_data = Column(JSON, default=dict)

    __table_args__ = (
        Index("ix_analysis_records_analysis", "analysis_id", "row_number"),
        Index("ix_analysis_records_upc", "analysis_id", "upc"),
    )

    analysis = relationship("Analysis", back_populates="records")


# ─── 4. Conflicts ──────────────────────────────────────────────────────────


class Conflict(Base):
    __tablename__ = "conflicts"

    conflict_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    analysis_id = Column(GUID(), ForeignKey("analyses.analysis_id"), nullable=False)
    conflict_type = Column(String(40), nullable=False)
    natural_key = Column(String(512), nullable=False)
    upc = Column(String(64))
    product_id = Column(String(255))
    related_product_ids = Column(JSON, nullable=False, default=list)
    related_upcs = Column(JSON, nullable=False, default=list)
    locations = Column(JSON, nullable=False, default=list)
    warehouses = Column(JSON, nullable=False, default=list)
    severity = Column(String(20), nullable=False)
    priority = Column(String(20), nullable=False)
    cost_impact = Column(Float, nullable=False, default=0.0)
    description = Column(Text)
    status = Column(String(20), nullable=False, default=ConflictStatus.NEW.value)
    version = Column(Integer, nullable=False, default=1)
    assigned_to = Column(String(255))
    assigned_at = Column(DateTime)
    resolved_by = Column(String(255))
    resolved_at = Column(DateTime)
    resolution = Column(String(20))
    resolution_notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "natural_key", name="uq_conflict_org_natural_key"),
        Index("ix_conflicts_org_status", "organization_id", "status"),
        Index("ix_conflicts_analysis", "analysis_id"),
        CheckConstraint(_in_clause("conflict_type", ConflictType), name="ck_conflict_type"),
        CheckConstraint(_in_clause("severity", Severity), name="ck_conflict_severity"),
        CheckConstraint(_in_clause("priority", Priority), name="ck_conflict_priority"),
        CheckConstraint(_in_clause("status", ConflictStatus), name="ck_conflict_status"),
        CheckConstraint(
            "resolution IS NULL OR " + _in_clause("resolution", ResolutionAction), name="ck_conflict_resolution"
        ),
        CheckConstraint("cost_impact >= 0", name="ck_conflict_cost_impact"),
    )

    @property
    def group_size(self) -> int:
        if self.conflict_type == ConflictType.MULTI_UPC_PRODUCT.value:
            return len(self.related_upcs or [])
        return len(self.related_product_ids or [])


# ─── 5. Audit Log ──────────────────────────────────────────────────────────


class AuditLog(Base):
    """Append-only audit trail. Rows are never updated or deleted."""

    __tablename__ = "audit_log"

    audit_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    user_id = Column(String(255))
    action = Column(String(50), nullable=False)
    resource_type = Column(String(30), nullable=False)
    resource_id = Column(String(64), nullable=False)
    details = Column(JSON, default=dict)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_log_org_time", "organization_id", "timestamp"),
        Index("ix_audit_log_resource", "resource_type", "resource_id"),
    )
