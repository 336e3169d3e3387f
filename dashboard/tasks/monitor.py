from __future__ import annotations
import logging
from dataclasses import asdict
from dashboard.tasks.celery_app import celery_app
from dashboard.core.config import settings
from dashboard.core.logging import ctx
from dashboard.locks.manager import FileLockManager
from dashboard.monitor.liveness import LivenessMonitor
from dashboard.services.registry import machine_scope

log = logging.getLogger(__name__)


def build_monitor() -> LivenessMonitor:
    return LivenessMonitor(locks=FileLockManager(settings.cache_dir), machine_factory=machine_scope)


@celery_app.task(name="sweep_migration_locks")
def sweep_migration_locks() -> dict:
    report = build_monitor().sweep()
    if report.recovered or report.released or report.errors:
        log.info("Sweep: recovered=%d released=%d errors=%d", report.recovered, report.released,
                 len(report.errors), extra=ctx(stage="monitor"))
    return asdict(report)
