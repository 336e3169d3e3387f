from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlencode
from dashboard.core.config import settings
from dashboard.core.errors import CoordinatorError
from dashboard.core.http_client import HttpResponse, ResilientHttpClient
from dashboard.core.logging import ctx
from dashboard.core.workflow import DispatchRequest, JobKey

log = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/migration-result"


def build_callback_url(base_url: str, key: JobKey, wave_id: Optional[str] = None) -> str:
    """Webhook URL carrying enough identity to correlate the later callback."""
    query = {"source_id": key.source_id, "target_id": key.target_id}
    if wave_id:
        query["wave_id"] = wave_id
    return f"{base_url.rstrip('/')}{WEBHOOK_PATH}?{urlencode(query)}"


@dataclass
class MigrationApiClient:
    """Client for the remote migration-execution server."""
    base_url: str = settings.migration_api_url
    dashboard_base_url: str = settings.dashboard_base_url
    http: ResilientHttpClient = field(default_factory=ResilientHttpClient)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")

    def dispatch_params(self, req: DispatchRequest, callback_url: str) -> dict:
        params = {
            "mb_project_uuid": req.key.source_id,
            "brz_project_id": int(req.key.target_id),
            "mb_site_id": int(req.site_id),
            "mb_secret": req.secret,
        }
        if req.workspace_id:
            params["brz_workspaces_id"] = int(req.workspace_id)
        if req.page_slug:
            params["mb_page_slug"] = req.page_slug
        params["mgr_manual"] = 1 if req.manual else 0
        if req.quality_analysis is not None:
            params["quality_analysis"] = "true" if req.quality_analysis else "false"
        if req.wave_id:
            params["wave_id"] = req.wave_id
        params["webhook_url"] = callback_url
        params["webhook_mb_project_uuid"] = req.key.source_id
        params["webhook_brz_project_id"] = int(req.key.target_id)
        return params

    def dispatch(self, req: DispatchRequest) -> HttpResponse:
        callback_url = build_callback_url(self.dashboard_base_url, req.key, req.wave_id)
        params = self.dispatch_params(req, callback_url)
        log.info("Dispatching migration to %s", self.base_url, extra=ctx(req.key, "dispatch"))
        return self.http.send("GET", f"{self.base_url}/", params, redact=(req.secret,))

    def fetch_status(self, key: JobKey) -> HttpResponse:
        return self.http.send("GET", f"{self.base_url}/migration-status", {
            "mb_project_uuid": key.source_id,
            "brz_project_id": int(key.target_id),
        })

    def health(self) -> dict:
        probe = ResilientHttpClient(attempts=1, delay=0, timeout=5.0, transport=self.http.transport)
        try:
            r = probe.send("GET", f"{self.base_url}/health")
        except CoordinatorError as e:
            log.warning("Migration server health check failed: %s", e, extra=ctx(stage="health"))
            return {"available": False, "message": e.message, "http_code": getattr(e, "status_code", None)}
        return {"available": True, "message": "Migration server is reachable", "http_code": r.status_code, "data": r.body}
