"""Authoritative lifecycle of a single migration job.

    pending -> in_progress -> completed | error

Terminal states only re-open through ``reset``. Every transition goes through
``JobRepository.compare_and_set`` so the three result channels (webhook, poll,
monitor) can race freely: the first terminal writer wins and later arrivals
turn into duplicates or logged conflicts.
"""
from __future__ import annotations
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.orm import Session
from dashboard.core.config import settings
from dashboard.core.errors import (
    CoordinatorError,
    CorrelationFailure,
    InvalidTransition,
    JobNotFound,
    LockNotFoundError,
    ValidationFailure,
)
from dashboard.core.logging import ctx
from dashboard.core.migration_api import MigrationApiClient
from dashboard.core.workflow import DispatchRequest, JobKey, JobStatus, StepResult, normalize_status
from dashboard.db.models import MigrationJob
from dashboard.db.repository import JobRepository, utcnow
from dashboard.locks.manager import FileLockManager, LockRecord
from dashboard.monitor.process import KillOutcome, is_process_alive, terminate_process

log = logging.getLogger(__name__)

ALL_STATUSES = list(JobStatus)
RESTARTABLE = [JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.ERROR]
# Columns a dispatch clears; restored when the dispatch never reaches the server.
ROLLBACK_FIELDS = ("params", "last_result", "result_hash", "error_message", "started_at", "completed_at")

APPLIED = "applied"
DUPLICATE = "duplicate"
CONFLICT = "conflict"
IGNORED = "ignored"
PROGRESS = "progress"


def result_digest(status: JobStatus, result: Optional[dict]) -> str:
    canonical = json.dumps({"status": status.value, "result": result or {}}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _error_text(result: Optional[dict]) -> Optional[str]:
    if not result or result.get("error") in (None, ""):
        return None
    error = result["error"]
    return error if isinstance(error, str) else json.dumps(error)


@dataclass
class IngestOutcome:
    key: JobKey
    outcome: str
    status: JobStatus
    previous: JobStatus
    message: str

    @property
    def changed(self) -> bool:
        return self.outcome in (APPLIED, PROGRESS)


@dataclass
class DispatchOutcome:
    job: MigrationJob
    http_code: int
    data: Any


@dataclass
class HardResetReport:
    key: JobKey
    steps: List[StepResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(step.ok for step in self.steps)


class JobStateMachine:
    def __init__(
        self,
        db: Session,
        locks: FileLockManager,
        api: MigrationApiClient,
        cache_dir: str = settings.cache_dir,
        stale_after: float = settings.stale_lock_seconds,
        default_site_id: Optional[int] = settings.default_site_id,
        default_secret: Optional[str] = settings.default_secret,
        clock: Callable[[], float] = time.time,
        probe: Callable[[Optional[int]], bool] = is_process_alive,
        terminate: Callable[..., KillOutcome] = terminate_process,
    ):
        self.jobs = JobRepository(db)
        self.locks = locks
        self.api = api
        self.cache_dir = Path(cache_dir)
        self.stale_after = stale_after
        self.default_site_id = default_site_id
        self.default_secret = default_secret
        self.clock = clock
        self.probe = probe
        self.terminate = terminate
        self._listeners: List[Callable[[MigrationJob], None]] = []

    # -- observers -----------------------------------------------------------

    def subscribe(self, listener: Callable[[MigrationJob], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, key: JobKey) -> None:
        job = self.jobs.get(key)
        if job is None:
            return
        for listener in self._listeners:
            try:
                listener(job)
            except Exception:
                log.exception("Transition listener failed", extra=ctx(key, "notify"))

    # -- lookup ----------------------------------------------------------------

    def get_job(self, key: JobKey) -> MigrationJob:
        job = self.jobs.get(key)
        if job is None:
            raise JobNotFound(f"Migration {key} not found")
        return job

    def resolve_key(self, target_id: int, source_id: Optional[str] = None) -> JobKey:
        """Find the full key when only the target id is known.

        Order: job table, lock record for the target, most recent result row.
        """
        if source_id:
            return JobKey(source_id, int(target_id))
        job = self.jobs.get_by_target(target_id)
        if job is not None:
            return job.key
        lock = self.locks.find_by_target(target_id)
        if lock is not None:
            return lock.key
        row = self.jobs.latest_result_for_target(target_id)
        if row is not None:
            return JobKey(row.source_id, int(row.target_id))
        raise CorrelationFailure(f"Cannot correlate target {target_id} with a source project")

    # -- dispatch --------------------------------------------------------------

    def build_request(self, key: JobKey, values: Optional[Dict[str, Any]] = None,
                      stored: Optional[Dict[str, Any]] = None) -> DispatchRequest:
        """Merge explicit values over stored params over configured defaults."""
        values = {k: v for k, v in (values or {}).items() if v not in (None, "")}
        merged: Dict[str, Any] = {k: v for k, v in (stored or {}).items() if v is not None}
        merged.update(values)
        site_id = merged.get("site_id") or self.default_site_id
        secret = merged.get("secret") or self.default_secret
        if not key.source_id:
            raise ValidationFailure("source_id is required")
        if not site_id:
            raise ValidationFailure("site_id must be given in the request or configured as default")
        if not secret:
            raise ValidationFailure("secret must be given in the request or configured as default")
        return DispatchRequest(
            key=key,
            site_id=int(site_id),
            secret=str(secret),
            workspace_id=merged.get("workspace_id"),
            page_slug=merged.get("page_slug"),
            manual=bool(merged.get("manual", False)),
            quality_analysis=merged.get("quality_analysis"),
            wave_id=merged.get("wave_id"),
        )

    def run(self, request: DispatchRequest, force: bool = False) -> DispatchOutcome:
        key = request.key
        job = self.jobs.get_or_create(key, wave_id=request.wave_id)
        previous = job.job_status

        if previous == JobStatus.IN_PROGRESS:
            if not force:
                raise InvalidTransition(f"Migration {key} is already in progress")
            self._drop_lock_for_forced_run(key)

        self.locks.acquire(key)
        wave_id = request.wave_id or job.wave_id
        snapshot = {name: getattr(job, name) for name in ROLLBACK_FIELDS}
        moved = self.jobs.compare_and_set(
            key, [previous],
            status=JobStatus.IN_PROGRESS,
            params=request.stored_params(),
            wave_id=wave_id,
            last_result=None,
            result_hash=None,
            error_message=None,
            started_at=utcnow(),
            completed_at=None,
        )
        if not moved:
            self._release_quietly(key)
            raise InvalidTransition(f"Migration {key} changed state concurrently; retry")

        try:
            response = self.api.dispatch(replace(request, wave_id=wave_id))
        except CoordinatorError as e:
            log.error("Dispatch failed, rolling back: %s", e, extra=ctx(key, "dispatch"))
            self._roll_back_dispatch(key, previous, snapshot, e.message)
            raise

        log.info("Migration dispatched (HTTP %d)", response.status_code, extra=ctx(key, "dispatch"))
        self._notify(key)
        return DispatchOutcome(job=self.get_job(key), http_code=response.status_code, data=response.body)

    def restart(self, key: JobKey, overrides: Optional[Dict[str, Any]] = None, force: bool = False) -> DispatchOutcome:
        job = self.jobs.get(key)
        stored = dict(job.params or {}) if job else {}
        if job is not None and job.wave_id:
            stored.setdefault("wave_id", job.wave_id)
        return self.run(self.build_request(key, overrides, stored), force=force)

    def _roll_back_dispatch(self, key: JobKey, previous: JobStatus, snapshot: Dict[str, Any], message: str) -> None:
        # The old worker's lock is already gone, so a forced run cannot go back to in_progress.
        if previous == JobStatus.IN_PROGRESS:
            self.force_error(key, f"Forced restart failed to dispatch: {message}", channel="dispatch")
            return
        restored = dict(snapshot)
        if previous == JobStatus.PENDING:
            restored["error_message"] = message
        self.jobs.compare_and_set(key, [JobStatus.IN_PROGRESS], status=previous, **restored)
        self._release_quietly(key)

    def _drop_lock_for_forced_run(self, key: JobKey) -> None:
        lock = self.locks.get(key)
        if lock is None:
            return
        alive = self.probe(lock.pid) if lock.is_local else None
        log.warning("Forced run over existing lock (pid=%s alive=%s)", lock.pid, alive,
                    extra=ctx(key, "dispatch"))
        self._release_quietly(key)

    def _release_quietly(self, key: JobKey) -> bool:
        try:
            self.locks.release(key)
            return True
        except LockNotFoundError:
            return False

    # -- results -----------------------------------------------------------------

    def ingest_result(self, key: JobKey, status: str | JobStatus, result: Optional[dict] = None,
                      channel: str = "webhook", wave_id: Optional[str] = None,
                      override: bool = False) -> IngestOutcome:
        job = self.get_job(key)
        status = normalize_status(status)
        digest = result_digest(status, result)
        current = job.job_status

        if not status.is_terminal:
            if current != JobStatus.IN_PROGRESS:
                return IngestOutcome(key, IGNORED, current, current, f"Progress report ignored, job is {current.value}")
            self.jobs.compare_and_set(key, [JobStatus.IN_PROGRESS], last_result=result)
            try:
                stage = (result or {}).get("stage") or (result or {}).get("current_stage")
                self.locks.heartbeat(key, stage=stage)
            except LockNotFoundError:
                pass
            return IngestOutcome(key, PROGRESS, JobStatus.IN_PROGRESS, current, "Progress recorded")

        if current == JobStatus.IN_PROGRESS:
            if self._finalize(key, [JobStatus.IN_PROGRESS], status, result, digest, channel, wave_id):
                return IngestOutcome(key, APPLIED, status, current, f"Status set to {status.value}")
            # Another channel finalized first; compare against what it wrote.
            job = self.get_job(key)
            current = job.job_status

        if current == JobStatus.PENDING:
            log.warning("Result %s via %s ignored, job is pending", status.value, channel, extra=ctx(key, "ingest"))
            return IngestOutcome(key, IGNORED, current, current, "Job is pending; result ignored")

        if current == status and job.result_hash == digest:
            log.info("Duplicate %s result via %s", status.value, channel, extra=ctx(key, "ingest"))
            return IngestOutcome(key, DUPLICATE, current, current, "Result already recorded")

        if override:
            if self._finalize(key, [current], status, result, digest, channel, wave_id):
                log.warning("Terminal result %s overridden with %s via %s", current.value, status.value, channel,
                            extra=ctx(key, "ingest"))
                return IngestOutcome(key, APPLIED, status, current, f"Status overridden to {status.value}")
            current = self.get_job(key).job_status

        log.warning("Conflicting terminal result: recorded=%s incoming=%s via %s; keeping recorded",
                    current.value, status.value, channel, extra=ctx(key, "ingest"))
        return IngestOutcome(key, CONFLICT, current, current, f"Conflicts with recorded status {current.value}")

    def _finalize(self, key: JobKey, expected: List[JobStatus], status: JobStatus, result: Optional[dict],
                  digest: str, channel: str, wave_id: Optional[str], error_message: Optional[str] = None) -> bool:
        moved = self.jobs.compare_and_set(
            key, expected,
            status=status,
            last_result=result,
            result_hash=digest,
            error_message=error_message or _error_text(result),
            completed_at=utcnow(),
        )
        if not moved:
            return False
        job = self.get_job(key)
        self.jobs.record_result(key, status, channel, result, digest, wave_id or job.wave_id)
        self._release_quietly(key)
        log.info("Migration finalized as %s via %s", status.value, channel, extra=ctx(key, "ingest"))
        self._notify(key)
        return True

    def force_error(self, key: JobKey, message: str, channel: str = "monitor") -> bool:
        """Move an in-progress job to error; returns False if it was not in progress."""
        result = {"status": JobStatus.ERROR.value, "error": message, "status_source": channel}
        return self._finalize(key, [JobStatus.IN_PROGRESS], JobStatus.ERROR, result,
                              result_digest(JobStatus.ERROR, result), channel, None, error_message=message)

    def poll_status(self, key: JobKey) -> Dict[str, Any]:
        """Ask the migration server directly and feed the answer back as a result."""
        job = self.get_job(key)
        response = self.api.fetch_status(key)
        data = response.body if isinstance(response.body, dict) else {"raw": response.body}
        outcome = None
        reported = data.get("status")
        if reported:
            try:
                normalize_status(reported)
            except ValueError:
                log.warning("Unknown status %r from migration server", reported, extra=ctx(key, "poll"))
            else:
                outcome = self.ingest_result(key, reported, data, channel="poll", wave_id=job.wave_id)
        return {"data": data, "outcome": outcome}

    def heartbeat(self, key: JobKey, stage: Optional[str] = None, pid: Optional[int] = None) -> LockRecord:
        """Liveness report from the worker; the first one carrying a PID registers it on the lock."""
        if pid:
            self.locks.register_worker(key, pid)
        return self.locks.heartbeat(key, stage=stage)

    # -- administrative commands ---------------------------------------------------

    def kill(self, key: JobKey, force: bool = False) -> Dict[str, Any]:
        lock = self.locks.get(key)
        pid = lock.pid if lock is not None and lock.is_local else None
        outcome: Optional[KillOutcome] = None
        if pid:
            try:
                outcome = self.terminate(pid, force=force)
            except OSError as e:
                raise CoordinatorError(f"Could not terminate process {pid}: {e}") from e
        message = f"Migration process was terminated manually (PID: {pid})" if pid else \
            "Migration was cancelled manually (no local process known)"
        forced = self.force_error(key, message, channel="kill")
        if not forced:
            self._release_quietly(key)
        log.info("Kill: pid=%s signal=%s status_forced=%s", pid, outcome.signal if outcome else None, forced,
                 extra=ctx(key, "kill"))
        job = self.jobs.get(key)
        return {
            "pid": pid,
            "killed": bool(outcome and outcome.killed),
            "signal": outcome.signal if outcome else None,
            "force": force,
            "message": outcome.message if outcome else "No locally known process to signal",
            "status": job.status if job else None,
        }

    def remove_lock(self, key: JobKey) -> bool:
        removed = self._release_quietly(key)
        log.info("Administrative unlock (removed=%s)", removed, extra=ctx(key, "unlock"))
        return removed

    def cache_path(self, key: JobKey) -> Path:
        digest = hashlib.md5(f"{key.source_id}{key.target_id}".encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}-{key.target_id}.json"

    def remove_cache(self, key: JobKey) -> Dict[str, Any]:
        path = self.cache_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return {"removed": False, "cache_file": str(path)}
        log.info("Cache file removed", extra=ctx(key, "cache"))
        return {"removed": True, "cache_file": str(path)}

    def reset(self, key: JobKey) -> MigrationJob:
        self.get_job(key)
        self.jobs.compare_and_set(
            key, ALL_STATUSES,
            status=JobStatus.PENDING,
            last_result=None,
            result_hash=None,
            error_message=None,
            started_at=None,
            completed_at=None,
        )
        self._release_quietly(key)
        log.info("Status reset to pending", extra=ctx(key, "reset"))
        self._notify(key)
        return self.get_job(key)

    def hard_reset(self, key: JobKey) -> HardResetReport:
        report = HardResetReport(key=key)
        lock = self.locks.get(key)

        def step(name: str, action: Callable[[], StepResult]) -> None:
            try:
                report.steps.append(action())
            except Exception as e:
                log.warning("Hard reset step %s failed: %s", name, e, extra=ctx(key, "hard_reset"))
                report.steps.append(StepResult(name, False, str(e)))

        def kill_step() -> StepResult:
            if lock is None or not lock.is_local:
                return StepResult("kill", True, "No local process to terminate")
            outcome = self.terminate(lock.pid, force=False)
            return StepResult("kill", True, outcome.message, {"pid": outcome.pid, "killed": outcome.killed})

        def lock_step() -> StepResult:
            removed = self._release_quietly(key)
            return StepResult("remove_lock", True, "Lock removed" if removed else "No lock present", {"removed": removed})

        def cache_step() -> StepResult:
            info = self.remove_cache(key)
            return StepResult("remove_cache", True, "Cache removed" if info["removed"] else "No cache file", info)

        def reset_step() -> StepResult:
            job = self.reset(key)
            return StepResult("reset_status", True, f"Status is {job.status}")

        step("kill", kill_step)
        step("remove_lock", lock_step)
        step("remove_cache", cache_step)
        step("reset_status", reset_step)
        return report

    def process_info(self, key: JobKey) -> Dict[str, Any]:
        job = self.jobs.get(key)
        lock = self.locks.get(key)
        info: Dict[str, Any] = {
            "status": job.status if job else None,
            "lock_exists": lock is not None,
            "lock_file": str(self.locks.path_for(key)),
            "running": False,
            "pid": None,
        }
        if lock is None:
            return info
        now = self.clock()
        alive = self.probe(lock.pid) if lock.is_local else None
        age = lock.age(now) if lock.is_local else lock.silence(now)
        info.update({
            "pid": lock.pid,
            "worker": lock.worker,
            "alive": alive,
            "running": bool(alive) if lock.is_local else age <= self.stale_after,
            "lock_age": round(lock.age(now), 1),
            "stale": (not alive) and age > self.stale_after,
            "started_at": lock.started_at,
            "last_check": lock.last_check,
            "current_stage": lock.current_stage,
            "stage_updated_at": lock.stage_updated_at,
            "progress": lock.progress,
        })
        return info
