from celery import Celery
from dashboard.core.config import settings

celery_app = Celery(
    "migration_dashboard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["dashboard.tasks.monitor", "dashboard.tasks.waves"],
)
celery_app.conf.update(task_track_started=True, result_expires=3600, broker_connection_retry_on_startup=True,)
celery_app.conf.beat_schedule = {
    "sweep-migration-locks": {
        "task": "sweep_migration_locks",
        "schedule": float(settings.monitor_interval),
    },
}
