"""
Celery Application Configuration

Analysis runs go to their own ``analysis`` queue so long detections do not
starve other work. The hard time limit stays under the per-analysis Redis
lock timeout, so a run is killed before another worker can take its lock.
"""

from celery import Celery

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "upcguard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.analysis"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Long runs; one task per worker process at a time
    worker_prefetch_multiplier=1,
    task_time_limit=max(settings.analysis_lock_timeout_seconds - 60, 60),
    task_soft_time_limit=max(settings.analysis_lock_timeout_seconds - 120, 30),
    task_default_queue="analysis",
    task_routes={
        "workers.analysis.*": {"queue": "analysis"},
    },
)
