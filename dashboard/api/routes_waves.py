import logging
from typing import Optional
from fastapi import APIRouter, Depends
from dashboard.api.deps import get_services
from dashboard.core.logging import ctx
from dashboard.core.workflow import JobKey
from dashboard.schemas.jobs import CommandResponse
from dashboard.schemas.waves import (
    MemberReportOut,
    RestartAllRequest,
    RestartAllResponse,
    WaveCreateRequest,
    WaveResponse,
)
from dashboard.services.registry import ServiceRegistry

log = logging.getLogger(__name__)

router = APIRouter(prefix="/waves")


def _wave_data(services: ServiceRegistry, wave) -> dict:
    return WaveResponse.from_wave(wave, services.waves.members(wave)).model_dump(mode="json")


def _overrides(req) -> dict:
    return req.model_dump(include={"site_id", "secret", "quality_analysis"}, exclude_none=True)


@router.post("", response_model=CommandResponse)
def create_wave(req: WaveCreateRequest, services: ServiceRegistry = Depends(get_services)):
    wave = services.waves.create_wave(
        req.name,
        [JobKey(m.source_id, m.target_id) for m in req.members],
        batch_size=req.batch_size,
    )
    queued = False
    if req.start:
        from dashboard.tasks.waves import start_wave
        start_wave.delay(wave.wave_id, _overrides(req))
        queued = True
        log.info("Wave %s queued for background dispatch", wave.wave_id, extra=ctx(stage="wave"))
    return CommandResponse(
        success=True,
        message=f"Wave {wave.wave_id} created" + (" and queued" if queued else ""),
        data=_wave_data(services, wave),
    )


@router.get("", response_model=CommandResponse)
def list_waves(services: ServiceRegistry = Depends(get_services)):
    waves = [_wave_data(services, w) for w in services.waves.list_waves()]
    return CommandResponse(success=True, message=f"{len(waves)} waves", data=waves)


@router.get("/{wave_id}", response_model=CommandResponse)
def get_wave(wave_id: str, services: ServiceRegistry = Depends(get_services)):
    return CommandResponse(success=True, data=_wave_data(services, services.waves.get_wave(wave_id)))


@router.post("/{wave_id}/restart-all", response_model=RestartAllResponse)
def restart_all(wave_id: str, req: Optional[RestartAllRequest] = None,
                services: ServiceRegistry = Depends(get_services)):
    req = req or RestartAllRequest()
    report = services.waves.restart_all(wave_id, req.source_ids or None, _overrides(req), force=req.force)
    wave = services.waves.get_wave(wave_id)
    return RestartAllResponse(
        success=report.failed == 0,
        wave_id=wave_id,
        total=report.total,
        succeeded=report.succeeded,
        failed=report.failed,
        members=[MemberReportOut(**vars(m)) for m in report.members],
        progress={
            "status": wave.status,
            "total": wave.progress_total,
            "completed": wave.progress_completed,
            "failed": wave.progress_failed,
        },
    )


@router.post("/{wave_id}/reset-status", response_model=CommandResponse)
def reset_status(wave_id: str, services: ServiceRegistry = Depends(get_services)):
    result = services.waves.reset_wave_status(wave_id)
    failures = [vars(f) for f in result["failures"]]
    return CommandResponse(
        success=result["success"],
        message=result["message"],
        error=f"{len(failures)} member(s) could not be reset" if failures else None,
        data={"progress": result["progress"], "failures": failures},
    )


@router.post("/{wave_id}/jobs/{source_id}/restart", response_model=CommandResponse)
def restart_member(wave_id: str, source_id: str, req: Optional[RestartAllRequest] = None,
                   services: ServiceRegistry = Depends(get_services)):
    req = req or RestartAllRequest()
    member = services.waves.restart_member(wave_id, source_id, _overrides(req), force=req.force)
    return CommandResponse(
        success=member.success,
        message="Member restarted" if member.success else None,
        error=member.error,
        data=vars(member),
    )
