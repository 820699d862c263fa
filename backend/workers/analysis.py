"""
Analysis Workers — background conflict detection runs.

Workers:
  1. run_conflict_analysis: detect and reconcile conflicts for one uploaded batch

Only one run per analysis may execute at a time; the task holds a Redis lock
``analysis-lock:{analysis_id}`` for the duration of the run.
"""

import redis
import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()

LOCK_KEY = "analysis-lock:{analysis_id}"


async def run_analysis_job(
    db,
    *,
    broadcaster,
    settings,
    organization_id: str,
    analysis_id: str,
    user_id: str | None = None,
) -> dict:
    """
    Worker-path orchestration:
      build orchestrator on the session -> run -> flatten outcome for the result backend.
    """
    from conflicts.orchestrator import AnalysisOrchestrator
    from conflicts.types import EngineContext

    orchestrator = AnalysisOrchestrator.for_session(db, broadcaster, settings)
    outcome = await orchestrator.run_analysis(
        EngineContext(organization_id=organization_id, user_id=user_id),
        analysis_id,
    )
    return {
        "status": outcome.status.value.lower(),
        "analysis_id": outcome.analysis_id,
        "conflicts_found": outcome.conflicts_found,
        "error": outcome.error,
        "retryable": outcome.retryable,
        **outcome.counts(),
    }


@celery_app.task(
    name="workers.analysis.run_conflict_analysis",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def run_conflict_analysis(self, organization_id: str, analysis_id: str, user_id: str | None = None):
    """
    Run conflict detection for one analysis.

    Flow:
      1. Take the per-analysis Redis lock (skip if another worker holds it)
      2. Run the orchestrator against a task-local engine and broadcaster
      3. Retry on lost natural-key races; re-runs are idempotent
    """
    import asyncio

    from sqlalchemy.pool import NullPool

    from core.config import get_settings
    from db.session import bind_tenant_context, build_engine, build_session_factory

    settings = get_settings()
    run_id = self.request.id or "manual"
    logger.info("analysis.run.started", organization_id=organization_id, analysis_id=analysis_id, run_id=run_id)

    client = redis.Redis.from_url(settings.redis_url)
    lock = client.lock(
        LOCK_KEY.format(analysis_id=analysis_id),
        timeout=settings.analysis_lock_timeout_seconds,
    )
    if not lock.acquire(blocking=False):
        logger.warning("analysis.run.locked", analysis_id=analysis_id, run_id=run_id)
        client.close()
        return {"status": "skipped", "reason": "analysis_locked", "analysis_id": analysis_id}

    async def _run():
        from events.broadcaster import build_broadcaster

        engine = build_engine(settings, poolclass=NullPool)
        # Async Redis clients are bound to the loop that created them.
        broadcaster = build_broadcaster(settings)
        try:
            async with build_session_factory(engine)() as db:
                bind_tenant_context(db, organization_id)
                return await run_analysis_job(
                    db,
                    broadcaster=broadcaster,
                    settings=settings,
                    organization_id=organization_id,
                    analysis_id=analysis_id,
                    user_id=user_id,
                )
        finally:
            await broadcaster.close()
            await engine.dispose()

    try:
        result = asyncio.run(_run())
    except Exception as exc:
        logger.error("analysis.run.failed", analysis_id=analysis_id, run_id=run_id, error=str(exc))
        raise
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning("analysis.run.lock_expired", analysis_id=analysis_id, run_id=run_id)
        client.close()

    if result.pop("retryable"):
        raise self.retry()

    logger.info(
        "analysis.run.completed",
        analysis_id=analysis_id,
        run_id=run_id,
        status=result["status"],
        conflicts_found=result["conflicts_found"],
    )
    return result
