from __future__ import annotations
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from sqlalchemy.orm import Session
from dashboard.core.config import settings
from dashboard.core.errors import CoordinatorError, ValidationFailure, WaveNotFound
from dashboard.core.logging import ctx
from dashboard.core.workflow import JobKey, JobStatus, WaveStatus
from dashboard.db.models import MigrationJob, Wave
from dashboard.db.repository import JobRepository, WaveRepository, utcnow
from dashboard.services.jobs import JobStateMachine

log = logging.getLogger(__name__)


def new_wave_id(clock: Callable[[], float] = time.time) -> str:
    return f"{int(clock())}_{random.randint(1000, 9999)}"


@dataclass(frozen=True)
class WaveProgress:
    total: int
    completed: int
    failed: int

    def as_dict(self) -> dict:
        return {"total": self.total, "completed": self.completed, "failed": self.failed}


def derive_wave_status(progress: WaveProgress, pending: Optional[int]) -> WaveStatus:
    if progress.total > 0 and progress.completed + progress.failed == progress.total:
        return WaveStatus.COMPLETED
    if pending is not None and pending == progress.total:
        return WaveStatus.PENDING
    return WaveStatus.IN_PROGRESS


@dataclass
class MemberReport:
    source_id: str
    target_id: int
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RestartReport:
    wave_id: str
    members: List[MemberReport] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.members)

    @property
    def succeeded(self) -> int:
        return sum(1 for m in self.members if m.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded


class WaveAggregator:
    """Batches of jobs with progress recounted from member statuses."""

    def __init__(self, db: Session, machine: JobStateMachine, clock: Callable[[], float] = time.time):
        self.waves = WaveRepository(db)
        self.jobs = JobRepository(db)
        self.machine = machine
        self.clock = clock
        machine.subscribe(self.on_job_transition)

    def get_wave(self, wave_id: str) -> Wave:
        wave = self.waves.get(wave_id)
        if wave is None:
            raise WaveNotFound(f"Wave {wave_id} not found")
        return wave

    def list_waves(self) -> List[Wave]:
        return self.waves.list()

    def members(self, wave: Wave) -> List[MigrationJob]:
        return self.jobs.list_for_keys(wave.member_keys)

    def create_wave(self, name: str, members: Sequence[JobKey], batch_size: int = settings.default_batch_size) -> Wave:
        name = (name or "").strip()
        if not name:
            raise ValidationFailure("Wave name is required")
        ordered: List[JobKey] = []
        for key in members:
            if key not in ordered:
                ordered.append(key)
        if not ordered:
            raise ValidationFailure("Wave must have at least one member")
        if batch_size < 1:
            raise ValidationFailure("batch_size must be at least 1")

        wave_id = new_wave_id(self.clock)
        while self.waves.get(wave_id) is not None:
            wave_id = new_wave_id(self.clock)

        wave = self.waves.add(Wave(
            wave_id=wave_id,
            name=name,
            batch_size=batch_size,
            members=[[k.source_id, int(k.target_id)] for k in ordered],
            status=WaveStatus.PENDING.value,
            progress_total=len(ordered),
        ))
        for key in ordered:
            job = self.jobs.get_or_create(key, wave_id=wave_id)
            if job.wave_id != wave_id:
                job.wave_id = wave_id
                self.jobs.save(job)
        log.info("Wave %s created with %d members", wave_id, len(ordered), extra=ctx(stage="wave"))
        self.recompute_progress(wave_id)
        return self.get_wave(wave_id)

    def recompute_progress(self, wave_id: str) -> WaveProgress:
        wave = self.get_wave(wave_id)
        keys = wave.member_keys
        by_key = {job.key: job for job in self.jobs.list_for_keys(keys)}
        statuses = [by_key[k].job_status if k in by_key else JobStatus.PENDING for k in keys]
        progress = WaveProgress(
            total=len(keys),
            completed=statuses.count(JobStatus.COMPLETED),
            failed=statuses.count(JobStatus.ERROR),
        )
        status = derive_wave_status(progress, pending=statuses.count(JobStatus.PENDING))

        wave.progress_total = progress.total
        wave.progress_completed = progress.completed
        wave.progress_failed = progress.failed
        if status == WaveStatus.COMPLETED and wave.status != WaveStatus.COMPLETED.value:
            wave.completed_at = utcnow()
        elif status != WaveStatus.COMPLETED:
            wave.completed_at = None
        wave.status = status.value
        self.waves.save(wave)
        log.info("Wave %s progress %s status=%s", wave_id, progress.as_dict(), status.value, extra=ctx(stage="wave"))
        return progress

    def on_job_transition(self, job: MigrationJob) -> None:
        if job.wave_id and self.waves.get(job.wave_id) is not None:
            self.recompute_progress(job.wave_id)

    def _select(self, wave: Wave, source_ids: Optional[Iterable[str]]) -> List[JobKey]:
        keys = wave.member_keys
        if not source_ids:
            return keys
        wanted = set(source_ids)
        return [k for k in keys if k.source_id in wanted]

    def restart_all(self, wave_id: str, source_ids: Optional[Iterable[str]] = None,
                    overrides: Optional[Dict[str, Any]] = None, force: bool = False) -> RestartReport:
        wave = self.get_wave(wave_id)
        keys = self._select(wave, source_ids)
        if not keys:
            raise ValidationFailure(f"No members of wave {wave_id} match the selection")
        report = RestartReport(wave_id=wave_id)
        values = dict(overrides or {})
        values["wave_id"] = wave_id

        for offset in range(0, len(keys), wave.batch_size):
            batch = keys[offset:offset + wave.batch_size]
            log.info("Wave %s: dispatching batch %d (%d jobs)", wave_id, offset // wave.batch_size + 1, len(batch),
                     extra=ctx(stage="wave"))
            for key in batch:
                report.members.append(self._restart_member(key, values, force))

        self.recompute_progress(wave_id)
        log.info("Wave %s restart: %d ok, %d failed", wave_id, report.succeeded, report.failed, extra=ctx(stage="wave"))
        return report

    def restart_member(self, wave_id: str, source_id: str, overrides: Optional[Dict[str, Any]] = None,
                       force: bool = False) -> MemberReport:
        report = self.restart_all(wave_id, [source_id], overrides, force)
        return report.members[0]

    def _restart_member(self, key: JobKey, values: Dict[str, Any], force: bool) -> MemberReport:
        try:
            outcome = self.machine.restart(key, values, force=force)
        except CoordinatorError as e:
            log.warning("Wave member restart failed: %s", e.message, extra=ctx(key, "wave"))
            return MemberReport(key.source_id, key.target_id, False, error=e.message)
        return MemberReport(key.source_id, key.target_id, True, status=outcome.job.status)

    def reset_wave_status(self, wave_id: str) -> Dict[str, Any]:
        wave = self.get_wave(wave_id)
        failures: List[MemberReport] = []
        for key in wave.member_keys:
            try:
                self.machine.reset(key)
            except CoordinatorError as e:
                failures.append(MemberReport(key.source_id, key.target_id, False, error=e.message))
        progress = self.recompute_progress(wave_id)
        return {
            "success": not failures,
            "message": f"Wave {wave_id} reset to pending",
            "progress": progress.as_dict(),
            "failures": failures,
        }
