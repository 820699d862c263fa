"""
Conflicts Router — Conflict review and lifecycle endpoints.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_engine_context, get_lifecycle_manager, get_tenant_db
from conflicts.lifecycle import LifecycleManager
from conflicts.repository import SqlConflictRepository
from conflicts.suggestions import generate_resolution_suggestions
from conflicts.types import ConflictStatus, ConflictType, EngineContext, ResolutionAction, Severity

router = APIRouter(prefix="/api/v1/conflicts", tags=["conflicts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ConflictResponse(BaseModel):
    conflict_id: UUID
    organization_id: UUID
    analysis_id: UUID
    conflict_type: str
    natural_key: str
    upc: str | None
    product_id: str | None
    related_product_ids: list[str]
    related_upcs: list[str]
    locations: list[str]
    warehouses: list[str]
    severity: str
    priority: str
    cost_impact: float
    description: str | None
    status: str
    version: int
    assigned_to: str | None
    assigned_at: datetime | None
    resolved_by: str | None
    resolved_at: datetime | None
    resolution: str | None
    resolution_notes: str | None
    created_at: datetime
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class ConflictDetailResponse(ConflictResponse):
    suggestions: list[str]
    automatable: bool


class ConflictSummary(BaseModel):
    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    by_type: dict[str, int]
    open_cost_impact: float
    resolution_rate: int


class AssignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    resolution: ResolutionAction
    notes: str | None = None


class RejectRequest(BaseModel):
    notes: str | None = None


class BulkAssignRequest(BaseModel):
    conflict_ids: list[str]
    assignee_id: str


class BulkAssignFailureResponse(BaseModel):
    conflict_id: str
    code: str
    message: str


class BulkAssignResponse(BaseModel):
    succeeded: list[str]
    failed: list[BulkAssignFailureResponse]


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[ConflictResponse])
async def list_conflicts(
    status: ConflictStatus | None = None,
    severity: Severity | None = None,
    conflict_type: ConflictType | None = None,
    assigned_to: str | None = None,
    analysis_id: UUID | None = None,
    search: str | None = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_tenant_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """List conflicts with filters, newest first."""
    return await SqlConflictRepository(db).list_conflicts(
        ctx.organization_id,
        status=status.value if status else None,
        severity=severity.value if severity else None,
        conflict_type=conflict_type.value if conflict_type else None,
        assigned_to=assigned_to,
        analysis_id=str(analysis_id) if analysis_id else None,
        search=search,
        skip=skip,
        limit=limit,
    )


@router.get("/summary", response_model=ConflictSummary)
async def get_conflict_summary(
    db: AsyncSession = Depends(get_tenant_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Get conflict counts and open cost impact."""
    return await SqlConflictRepository(db).summarize(ctx.organization_id)


@router.post("/bulk-assign", response_model=BulkAssignResponse)
async def bulk_assign_conflicts(
    body: BulkAssignRequest,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Assign many conflicts; per-conflict failures are reported, not raised."""
    result = await manager.bulk_assign(ctx, body.conflict_ids, body.assignee_id)
    return BulkAssignResponse(
        succeeded=result.succeeded,
        failed=[
            BulkAssignFailureResponse(conflict_id=f.conflict_id, code=f.code, message=f.message) for f in result.failed
        ],
    )


@router.get("/{conflict_id}", response_model=ConflictDetailResponse)
async def get_conflict(
    conflict_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Get a conflict with resolution suggestions."""
    conflict = await SqlConflictRepository(db).find_by_id(ctx.organization_id, str(conflict_id))
    if not conflict:
        raise HTTPException(status_code=404, detail="Conflict not found")

    guidance = generate_resolution_suggestions(conflict.conflict_type, conflict.group_size, conflict.severity)
    return ConflictDetailResponse(
        **ConflictResponse.model_validate(conflict).model_dump(),
        suggestions=guidance["suggestions"],
        automatable=guidance["automatable"],
    )


@router.patch("/{conflict_id}/assign", response_model=ConflictResponse)
async def assign_conflict(
    conflict_id: UUID,
    body: AssignRequest,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Assign a conflict to a reviewer."""
    return await manager.assign(ctx, str(conflict_id), body.assignee_id)


@router.patch("/{conflict_id}/start", response_model=ConflictResponse)
async def start_conflict_work(
    conflict_id: UUID,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Start work on a conflict."""
    return await manager.start_work(ctx, str(conflict_id))


@router.patch("/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: UUID,
    body: ResolveRequest,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Resolve a conflict with a resolution action and notes."""
    return await manager.resolve(ctx, str(conflict_id), body.resolution, body.notes)


@router.patch("/{conflict_id}/reject", response_model=ConflictResponse)
async def reject_conflict(
    conflict_id: UUID,
    body: RejectRequest,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Reject a conflict as not a real problem."""
    return await manager.reject(ctx, str(conflict_id), body.notes)
