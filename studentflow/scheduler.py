import logging

from apscheduler.schedulers.background import BackgroundScheduler

from studentflow.config import Settings
from studentflow.progress import ProgressRegistry


logger = logging.getLogger(__name__)


def _evict_finished_tasks(registry: ProgressRegistry, ttl_seconds: float) -> None:
    evicted = registry.evict_expired(ttl_seconds)
    logger.debug(
        "eviction sweep finished",
        extra={"evicted": len(evicted), "remaining": len(registry)},
    )


def start_eviction_scheduler(settings: Settings, registry: ProgressRegistry) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        _evict_finished_tasks,
        "interval",
        args=[registry, settings.task_ttl_seconds],
        seconds=settings.eviction_interval_seconds,
        id="evict_finished_tasks",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()

    logger.info(
        "eviction scheduler started",
        extra={
            "task_ttl_seconds": settings.task_ttl_seconds,
            "eviction_interval_seconds": settings.eviction_interval_seconds,
        },
    )
    return scheduler
