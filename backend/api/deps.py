"""
UPC Conflict Engine API Dependencies

Dependency injection for DB sessions, auth, tenant context and engine services.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from conflicts.audit import SqlAuditSink
from conflicts.lifecycle import LifecycleManager
from conflicts.orchestrator import AnalysisOrchestrator
from conflicts.repository import SqlConflictRepository
from conflicts.types import EngineContext
from core.config import get_settings
from core.security import decode_access_token
from db.session import AsyncSessionLocal, bind_tenant_context
from events.broadcaster import EventBroadcaster, get_broadcaster

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

# Dev organization_id must match the seed used by local tooling
DEV_ORGANIZATION_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@upcguard.local",
            "organization_id": DEV_ORGANIZATION_ID,
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def get_tenant_db(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
) -> AsyncSession:
    """
    Get a DB session with tenant context set.
    Sets the PostgreSQL RLS variable at the start of every transaction, so
    it survives the commits engine operations make mid-request.
    """
    organization_id = user.get("organization_id")
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization context",
        )
    bind_tenant_context(db, organization_id)
    return db


def get_engine_context(user: dict = Depends(get_current_user)) -> EngineContext:
    """Explicit caller identity handed to every engine operation."""
    organization_id = user.get("organization_id")
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No organization context",
        )
    return EngineContext(
        organization_id=str(organization_id),
        user_id=user.get("email") or user.get("sub"),
    )


def get_event_broadcaster() -> EventBroadcaster:
    return get_broadcaster()


def get_lifecycle_manager(
    db: AsyncSession = Depends(get_tenant_db),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
) -> LifecycleManager:
    return LifecycleManager(
        SqlConflictRepository(db),
        SqlAuditSink(db),
        broadcaster,
        max_bulk_assign=settings.max_bulk_assign,
    )


def get_orchestrator(
    db: AsyncSession = Depends(get_tenant_db),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
) -> AnalysisOrchestrator:
    return AnalysisOrchestrator.for_session(db, broadcaster, settings)
