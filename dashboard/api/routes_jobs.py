from typing import Optional
from fastapi import APIRouter, Depends, Query
from dashboard.api.deps import get_services
from dashboard.core.workflow import JobKey
from dashboard.schemas.jobs import (
    CommandResponse,
    HardResetResponse,
    HeartbeatRequest,
    JobResponse,
    KillRequest,
    RestartJobRequest,
    RunJobRequest,
    StepResponse,
)
from dashboard.services.registry import ServiceRegistry

router = APIRouter(prefix="/jobs")


def _key(services: ServiceRegistry, target_id: int, source_id: Optional[str]) -> JobKey:
    return services.machine.resolve_key(target_id, source_id)


def _job_data(job) -> dict:
    return JobResponse.from_job(job).model_dump(mode="json")


@router.post("/run", response_model=CommandResponse)
def run_job(req: RunJobRequest, services: ServiceRegistry = Depends(get_services)):
    machine = services.machine
    key = JobKey(req.source_id, req.target_id)
    values = req.model_dump(exclude={"source_id", "target_id", "force"})
    outcome = machine.run(machine.build_request(key, values), force=req.force)
    return CommandResponse(
        success=True,
        message="Migration started",
        data={"job": _job_data(outcome.job), "http_code": outcome.http_code, "response": outcome.data},
    )


@router.get("/{target_id}", response_model=CommandResponse)
def get_job(target_id: int, source_id: Optional[str] = Query(None),
            services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    return CommandResponse(success=True, data=_job_data(services.machine.get_job(key)))


@router.post("/{target_id}/restart", response_model=CommandResponse)
def restart_job(target_id: int, source_id: Optional[str] = Query(None),
                req: Optional[RestartJobRequest] = None,
                services: ServiceRegistry = Depends(get_services)):
    req = req or RestartJobRequest()
    key = _key(services, target_id, source_id)
    overrides = req.model_dump(exclude={"force"}, exclude_none=True)
    outcome = services.machine.restart(key, overrides, force=req.force)
    return CommandResponse(
        success=True,
        message="Migration restarted",
        data={"job": _job_data(outcome.job), "http_code": outcome.http_code, "response": outcome.data},
    )


@router.post("/{target_id}/kill", response_model=CommandResponse)
def kill_job(target_id: int, source_id: Optional[str] = Query(None),
             req: Optional[KillRequest] = None,
             services: ServiceRegistry = Depends(get_services)):
    req = req or KillRequest()
    key = _key(services, target_id, source_id)
    info = services.machine.kill(key, force=req.force)
    return CommandResponse(success=True, message=info["message"], data=info)


@router.delete("/{target_id}/lock", response_model=CommandResponse)
def remove_lock(target_id: int, source_id: Optional[str] = Query(None),
                services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    removed = services.machine.remove_lock(key)
    return CommandResponse(
        success=True,
        message="Lock file removed" if removed else "No lock file present",
        data={"removed": removed, "lock_file": str(services.machine.locks.path_for(key))},
    )


@router.delete("/{target_id}/cache", response_model=CommandResponse)
def remove_cache(target_id: int, source_id: Optional[str] = Query(None),
                 services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    info = services.machine.remove_cache(key)
    return CommandResponse(
        success=True,
        message="Cache file removed" if info["removed"] else "No cache file present",
        data=info,
    )


@router.post("/{target_id}/reset-status", response_model=CommandResponse)
def reset_status(target_id: int, source_id: Optional[str] = Query(None),
                 services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    job = services.machine.reset(key)
    return CommandResponse(success=True, message="Status reset to pending", data=_job_data(job))


@router.post("/{target_id}/hard-reset", response_model=HardResetResponse)
def hard_reset(target_id: int, source_id: Optional[str] = Query(None),
               services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    report = services.machine.hard_reset(key)
    return HardResetResponse(
        success=report.success,
        steps=[StepResponse(step=s.step, ok=s.ok, message=s.message, details=s.details) for s in report.steps],
    )


@router.get("/{target_id}/process", response_model=CommandResponse)
def process_info(target_id: int, source_id: Optional[str] = Query(None),
                 services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    return CommandResponse(success=True, data=services.machine.process_info(key))


@router.post("/{target_id}/heartbeat", response_model=CommandResponse)
def heartbeat(target_id: int, source_id: Optional[str] = Query(None),
              req: Optional[HeartbeatRequest] = None,
              services: ServiceRegistry = Depends(get_services)):
    req = req or HeartbeatRequest()
    key = _key(services, target_id, source_id)
    record = services.machine.heartbeat(key, stage=req.stage, pid=req.pid)
    return CommandResponse(success=True, message="Heartbeat recorded", data=record.to_dict())


@router.get("/{target_id}/status-from-server", response_model=CommandResponse)
def status_from_server(target_id: int, source_id: Optional[str] = Query(None),
                       services: ServiceRegistry = Depends(get_services)):
    key = _key(services, target_id, source_id)
    polled = services.machine.poll_status(key)
    outcome = polled["outcome"]
    return CommandResponse(
        success=True,
        message=outcome.message if outcome else "Migration server reported no recognizable status",
        data={
            "server": polled["data"],
            "outcome": outcome.outcome if outcome else None,
            "job": _job_data(services.machine.get_job(key)),
        },
    )
