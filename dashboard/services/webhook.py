from __future__ import annotations
import logging
from typing import Any, Dict, Optional
from pydantic import ValidationError
from dashboard.core.errors import CorrelationFailure
from dashboard.core.logging import ctx
from dashboard.core.workflow import JobKey, JobStatus, is_wave_id, normalize_status
from dashboard.schemas.webhooks import IDENTITY_FIELDS, WebhookPayload
from dashboard.services.jobs import IngestOutcome, JobStateMachine
from dashboard.services.waves import WaveAggregator

log = logging.getLogger(__name__)


class WebhookCorrelator:
    """Turns migration-server callbacks into job transitions.

    The primary write (the job status) decides success; recomputing the wave
    named in the delivery is secondary and never fails the ingestion.
    """

    def __init__(self, machine: JobStateMachine, waves: WaveAggregator):
        self.machine = machine
        self.waves = waves

    @staticmethod
    def reported_status(payload: WebhookPayload) -> JobStatus:
        if payload.status:
            try:
                return normalize_status(payload.status)
            except ValueError:
                raise CorrelationFailure(f"Unknown status {payload.status!r}") from None
        if payload.error not in (None, ""):
            return JobStatus.ERROR
        return JobStatus.COMPLETED

    @staticmethod
    def wave_token(payload: WebhookPayload) -> Optional[str]:
        for token in (payload.wave_id, payload.migration_uuid):
            if is_wave_id(token):
                return token
        return None

    def ingest(self, raw: Dict[str, Any], override: bool = False) -> IngestOutcome:
        try:
            payload = WebhookPayload.model_validate(raw)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            log.warning("Webhook rejected, invalid identity fields: %s", fields, extra=ctx(stage="webhook"))
            raise CorrelationFailure(f"Webhook payload missing or invalid fields: {', '.join(fields) or 'payload'}") from None

        key = JobKey(payload.source_id, payload.target_id)
        status = self.reported_status(payload)
        wave_id = self.wave_token(payload)
        result = {k: v for k, v in raw.items() if k not in IDENTITY_FIELDS}
        result["status"] = status.value

        log.info("Webhook received: status=%s wave=%s", status.value, wave_id or "-", extra=ctx(key, "webhook"))
        outcome = self.machine.ingest_result(key, status, result, channel="webhook",
                                             wave_id=wave_id, override=override)

        if wave_id:
            try:
                self.waves.recompute_progress(wave_id)
            except Exception as e:
                log.error("Wave %s recompute after webhook failed: %s", wave_id, e, extra=ctx(key, "webhook"))
        return outcome
