from __future__ import annotations
import fcntl
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional
from dashboard.core.config import settings
from dashboard.core.errors import LockNotFoundError
from dashboard.core.logging import ctx
from dashboard.core.workflow import JobStatus
from dashboard.locks.manager import BrokenLock, FileLockManager, LockRecord
from dashboard.monitor.process import is_process_alive

log = logging.getLogger(__name__)

STALE_MESSAGE = ("Migration process was interrupted or exited without reporting a result "
                 "(no liveness for {age:.0f}s). Status updated by the monitor.")


@dataclass
class SweepReport:
    checked: int = 0
    touched: int = 0
    recovered: int = 0
    released: int = 0
    waiting: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False


class LivenessMonitor:
    """Periodic sweep over lock records.

    ``machine_factory`` returns a context manager yielding a JobStateMachine; a
    fresh one (with its own DB session) is used for every sweep.
    """

    def __init__(
        self,
        locks: FileLockManager,
        machine_factory: Callable,
        interval: float = settings.monitor_interval,
        stale_after: float = settings.stale_lock_seconds,
        clock: Callable[[], float] = time.time,
        probe: Callable[[Optional[int]], bool] = is_process_alive,
    ):
        self.locks = locks
        self.machine_factory = machine_factory
        self.interval = interval
        self.stale_after = stale_after
        self.clock = clock
        self.probe = probe
        self._running = threading.Lock()

    @contextmanager
    def _exclusive(self) -> Iterator[bool]:
        """Hold both the in-process and the cross-process sweep lock, or neither."""
        if not self._running.acquire(blocking=False):
            yield False
            return
        try:
            self.locks.lock_dir.mkdir(parents=True, exist_ok=True)
            with open(Path(self.locks.lock_dir) / "monitor.sweep", "a+") as fh:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                except OSError:
                    yield False
                    return
                try:
                    yield True
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._running.release()

    def sweep(self) -> SweepReport:
        report = SweepReport()
        with self._exclusive() as acquired:
            if not acquired:
                log.info("Sweep already running, skipping", extra=ctx(stage="monitor"))
                report.skipped = True
                return report
            entries = self.locks.scan()
            if entries:
                log.info("Checking %d active migrations", len(entries), extra=ctx(stage="monitor"))
            with self.machine_factory() as machine:
                for entry in entries:
                    report.checked += 1
                    label = entry.key or entry.path.name
                    try:
                        if isinstance(entry, BrokenLock):
                            self._check_broken(machine, entry, report)
                        else:
                            self._check(machine, entry, report)
                    except Exception as e:
                        log.exception("Reconciliation failed", extra=ctx(label, "monitor"))
                        report.errors.append(f"{label}: {e}")
        return report

    def _check_broken(self, machine, broken: BrokenLock, report: SweepReport) -> None:
        # Unparseable lock files age by modification time.
        age = broken.age(self.clock())
        if age <= self.stale_after:
            report.waiting += 1
            return
        key = broken.key
        job = machine.jobs.get(key) if key is not None else None
        if job is not None and job.job_status == JobStatus.IN_PROGRESS:
            if machine.force_error(key, STALE_MESSAGE.format(age=age), channel="monitor"):
                log.warning("Stale migration with unreadable lock forced to error (age=%.0fs)", age,
                            extra=ctx(key, "monitor"))
                report.recovered += 1
                return
        if self.locks.remove_broken(broken):
            report.released += 1

    def _check(self, machine, record: LockRecord, report: SweepReport) -> None:
        key = record.key
        now = self.clock()
        if record.is_local and self.probe(record.pid):
            self.locks.mark_checked(key)
            report.touched += 1
            return

        # Local locks age from their start, remote ones from their last heartbeat.
        age = record.age(now) if record.is_local else record.silence(now)
        if age <= self.stale_after:
            report.waiting += 1
            return

        job = machine.jobs.get(key)
        if job is not None and job.job_status == JobStatus.IN_PROGRESS:
            if machine.force_error(key, STALE_MESSAGE.format(age=age), channel="monitor"):
                log.warning("Stale migration forced to error (pid=%s, age=%.0fs)", record.pid, age,
                            extra=ctx(key, "monitor"))
                report.recovered += 1
                return
        try:
            self.locks.release(key)
        except LockNotFoundError:
            return
        log.warning("Orphaned lock released (job status=%s)", job.status if job else "missing",
                    extra=ctx(key, "monitor"))
        report.released += 1

    def run_forever(self, stop: threading.Event) -> None:
        log.info("Migration monitor started (interval %ss, stale after %ss)", self.interval, self.stale_after,
                 extra=ctx(stage="monitor"))
        while not stop.is_set():
            try:
                self.sweep()
            except Exception:
                log.exception("Monitor sweep failed", extra=ctx(stage="monitor"))
            stop.wait(self.interval)
        log.info("Migration monitor stopped", extra=ctx(stage="monitor"))
