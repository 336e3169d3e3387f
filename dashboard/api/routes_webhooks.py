from typing import Any, Dict
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool
from dashboard.api.deps import get_services
from dashboard.core.errors import CorrelationFailure
from dashboard.schemas.webhooks import WebhookResponse
from dashboard.services.registry import ServiceRegistry

router = APIRouter(prefix="/webhooks")


async def _body(request: Request) -> Dict[str, Any]:
    """JSON or form body, with query parameters filling in missing identity fields."""
    content_type = request.headers.get("content-type", "")
    if "json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            raise CorrelationFailure("Webhook body is not valid JSON") from None
        if not isinstance(data, dict):
            raise CorrelationFailure("Webhook body must be a JSON object")
    elif content_type:
        data = dict(await request.form())
    else:
        data = {}
    for name, value in request.query_params.items():
        if name != "override":
            data.setdefault(name, value)
    return data


@router.post("/migration-result", response_model=WebhookResponse)
async def migration_result(request: Request, services: ServiceRegistry = Depends(get_services)):
    raw = await _body(request)
    override = request.query_params.get("override", "").lower() in ("1", "true", "yes")
    outcome = await run_in_threadpool(services.webhook.ingest, raw, override=override)
    return WebhookResponse(
        success=True,
        message=outcome.message,
        data={
            "source_id": outcome.key.source_id,
            "target_id": outcome.key.target_id,
            "status": outcome.status.value,
            "outcome": outcome.outcome,
        },
    )


@router.get("/test-connection", response_model=WebhookResponse)
def test_connection_get(request: Request):
    return WebhookResponse(
        success=True,
        message="Webhook endpoint is reachable",
        data={"method": "GET", "query": dict(request.query_params)},
    )


@router.post("/test-connection", response_model=WebhookResponse)
async def test_connection_post(request: Request):
    return WebhookResponse(
        success=True,
        message="Webhook endpoint is reachable",
        data={"method": "POST", "query": dict(request.query_params), "body": await _body(request)},
    )
