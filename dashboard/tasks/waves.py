from __future__ import annotations
import logging
from typing import Optional
from dashboard.tasks.celery_app import celery_app
from dashboard.core.errors import WaveNotFound
from dashboard.core.logging import ctx
from dashboard.services.registry import service_scope

log = logging.getLogger(__name__)


@celery_app.task(name="start_wave")
def start_wave(wave_id: str, overrides: Optional[dict] = None) -> dict:
    with service_scope() as services:
        try:
            report = services.waves.restart_all(wave_id, overrides=overrides)
        except WaveNotFound:
            log.error("Wave %s not found", wave_id, extra=ctx(stage="wave"))
            return {"wave_id": wave_id, "total": 0, "succeeded": 0, "failed": 0}
        log.info("Wave %s started: %d ok, %d failed", wave_id, report.succeeded, report.failed,
                 extra=ctx(stage="wave"))
        return {"wave_id": wave_id, "total": report.total, "succeeded": report.succeeded, "failed": report.failed}
