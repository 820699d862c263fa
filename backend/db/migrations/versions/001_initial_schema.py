"""
Initial schema - all 5 tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TENANT_TABLES = ["analyses", "conflicts", "audit_log"]


def upgrade() -> None:
    # 1. Organizations
    op.create_table(
        "organizations",
        sa.Column(
            "organization_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 2. Analyses
    op.create_table(
        "analyses",
        sa.Column("analysis_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "organization_id", UUID(as_uuid=True), sa.ForeignKey("organizations.organization_id"), nullable=False
        ),
        sa.Column("file_name", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("conflicts_found", sa.Integer, nullable=False, server_default="0"),
        sa.Column("statistics", JSONB, server_default="{}"),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED')", name="ck_analysis_status"
        ),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_analysis_progress"),
    )
    op.create_index("ix_analyses_org_status", "analyses", ["organization_id", "status"])

    # 3. Analysis records
    op.create_table(
        "analysis_records",
        sa.Column("record_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("analysis_id", UUID(as_uuid=True), sa.ForeignKey("analyses.analysis_id"), nullable=False),
        sa.Column("row_number", sa.Integer, nullable=False, server_default="0"),
        sa.Column("product_id", sa.String(255)),
        sa.Column("warehouse_id", sa.String(255)),
        sa.Column("upc", sa.String(64)),
        sa.Column("location", sa.String(255)),
        sa.Column("raw_data", JSONB, server_default="{}"),
    )
    op.create_index("ix_analysis_records_analysis", "analysis_records", ["analysis_id", "row_number"])
    op.create_index("ix_analysis_records_upc", "analysis_records", ["analysis_id", "upc"])

    # 4. Conflicts
    op.create_table(
        "conflicts",
        sa.Column("conflict_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "organization_id", UUID(as_uuid=True), sa.ForeignKey("organizations.organization_id"), nullable=False
        ),
        sa.Column("analysis_id", UUID(as_uuid=True), sa.ForeignKey("analyses.analysis_id"), nullable=False),
        sa.Column("conflict_type", sa.String(40), nullable=False),
        sa.Column("natural_key", sa.String(512), nullable=False),
        sa.Column("upc", sa.String(64)),
        sa.Column("product_id", sa.String(255)),
        sa.Column("related_product_ids", JSONB, nullable=False, server_default="[]"),
        sa.Column("related_upcs", JSONB, nullable=False, server_default="[]"),
        sa.Column("locations", JSONB, nullable=False, server_default="[]"),
        sa.Column("warehouses", JSONB, nullable=False, server_default="[]"),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False),
        sa.Column("cost_impact", sa.Float, nullable=False, server_default="0"),
        sa.Column("description", sa.Text),
        sa.Column("status", sa.String(20), nullable=False, server_default="NEW"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("assigned_to", sa.String(255)),
        sa.Column("assigned_at", sa.DateTime),
        sa.Column("resolved_by", sa.String(255)),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("resolution", sa.String(20)),
        sa.Column("resolution_notes", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("organization_id", "natural_key", name="uq_conflict_org_natural_key"),
        sa.CheckConstraint("conflict_type IN ('DUPLICATE_UPC', 'MULTI_UPC_PRODUCT')", name="ck_conflict_type"),
        sa.CheckConstraint("severity IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')", name="ck_conflict_severity"),
        sa.CheckConstraint("priority IN ('LOW', 'MEDIUM', 'HIGH', 'URGENT')", name="ck_conflict_priority"),
        sa.CheckConstraint(
            "status IN ('NEW', 'ASSIGNED', 'IN_PROGRESS', 'RESOLVED', 'REJECTED')", name="ck_conflict_status"
        ),
        sa.CheckConstraint(
            "resolution IS NULL OR resolution IN ('KEEP_EXISTING', 'USE_NEW', 'MANUAL', 'IGNORE')",
            name="ck_conflict_resolution",
        ),
        sa.CheckConstraint("cost_impact >= 0", name="ck_conflict_cost_impact"),
    )
    op.create_index("ix_conflicts_org_status", "conflicts", ["organization_id", "status"])
    op.create_index("ix_conflicts_analysis", "conflicts", ["analysis_id"])

    # 5. Audit log (append-only)
    op.create_table(
        "audit_log",
        sa.Column("audit_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "organization_id", UUID(as_uuid=True), sa.ForeignKey("organizations.organization_id"), nullable=False
        ),
        sa.Column("user_id", sa.String(255)),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("resource_type", sa.String(30), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("details", JSONB, server_default="{}"),
        sa.Column("timestamp", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_org_time", "audit_log", ["organization_id", "timestamp"])
    op.create_index("ix_audit_log_resource", "audit_log", ["resource_type", "resource_id"])

    # Row-Level Security
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (organization_id::text = current_setting('app.current_organization_id', true))"
        )


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
    for table in ["audit_log", "conflicts", "analysis_records", "analyses", "organizations"]:
        op.drop_table(table)
