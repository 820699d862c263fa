"""
Analyses Router — Trigger and inspect conflict detection runs.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_engine_context, get_orchestrator, get_tenant_db
from conflicts.orchestrator import AnalysisOrchestrator
from conflicts.repository import SqlAnalysisStore
from conflicts.types import EngineContext

router = APIRouter(prefix="/api/v1/analyses", tags=["analyses"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AnalysisResponse(BaseModel):
    analysis_id: UUID
    organization_id: UUID
    file_name: str | None
    status: str
    progress: int
    total_records: int
    conflicts_found: int
    statistics: dict | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class AnalysisRunResponse(BaseModel):
    analysis_id: str
    status: str
    conflicts_found: int
    conflicts_created: int
    conflicts_updated: int
    conflicts_unchanged: int
    error: str | None
    statistics: dict


class AnalysisEnqueueResponse(BaseModel):
    analysis_id: str
    task_id: str
    status: str


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/{analysis_id}", response_model=AnalysisResponse)
async def get_analysis(
    analysis_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Get analysis status, progress and statistics."""
    analysis = await SqlAnalysisStore(db).get(ctx.organization_id, str(analysis_id))
    if not analysis:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return analysis


@router.post("/{analysis_id}/run", response_model=AnalysisRunResponse)
async def run_analysis(
    analysis_id: UUID,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    ctx: EngineContext = Depends(get_engine_context),
):
    """
    Run conflict detection inline and return the outcome.

    A run that fails on a dependency still returns 200 with status FAILED;
    the analysis row and event stream carry the same result.
    """
    outcome = await orchestrator.run_analysis(ctx, str(analysis_id))
    return AnalysisRunResponse(
        analysis_id=outcome.analysis_id,
        status=outcome.status.value,
        conflicts_found=outcome.conflicts_found,
        error=outcome.error,
        statistics=outcome.statistics,
        **outcome.counts(),
    )


@router.post("/{analysis_id}/enqueue", response_model=AnalysisEnqueueResponse, status_code=202)
async def enqueue_analysis(
    analysis_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Queue conflict detection on the analysis worker."""
    analysis = await SqlAnalysisStore(db).get(ctx.organization_id, str(analysis_id))
    if not analysis:
        raise HTTPException(status_code=404, detail="Analysis not found")

    from workers.analysis import run_conflict_analysis

    task = run_conflict_analysis.delay(ctx.organization_id, str(analysis_id), ctx.user_id)
    return AnalysisEnqueueResponse(analysis_id=str(analysis_id), task_id=str(task.id), status="queued")
