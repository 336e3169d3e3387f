from __future__ import annotations
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from dashboard.core.errors import AlreadyLockedError, LockNotFoundError
from dashboard.core.logging import ctx
from dashboard.core.workflow import JobKey

log = logging.getLogger(__name__)

# Fields the monitor and progress reports may change; key, pid and start time are fixed at creation.
TOUCHABLE_FIELDS = {
    "last_check", "last_check_timestamp", "last_heartbeat_timestamp",
    "current_stage", "stage_updated_at",
}

# Written into the lock by the worker itself.
PROGRESS_FIELDS = ("total_pages", "processed_pages", "progress_percent")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class LockRecord:
    source_id: str
    target_id: int
    pid: Optional[int]
    worker: str
    started_at: str
    started_timestamp: float
    last_check: Optional[str] = None
    last_check_timestamp: Optional[float] = None
    last_heartbeat_timestamp: Optional[float] = None
    current_stage: Optional[str] = None
    stage_updated_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> JobKey:
        return JobKey(self.source_id, int(self.target_id))

    @property
    def is_local(self) -> bool:
        return self.pid is not None and self.pid > 0

    @property
    def progress(self) -> Dict[str, Any]:
        return {k: self.extra[k] for k in PROGRESS_FIELDS if k in self.extra}

    def age(self, now: float) -> float:
        return max(0.0, now - self.started_timestamp)

    def silence(self, now: float) -> float:
        """Seconds since the last sign of life (heartbeat, or the start)."""
        last = max(self.started_timestamp, self.last_heartbeat_timestamp or 0.0)
        return max(0.0, now - last)

    def to_dict(self) -> dict:
        data = asdict(self)
        extra = data.pop("extra")
        return {**extra, **data}

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in data.items() if k in known}
        pid = values.get("pid")
        values["pid"] = int(pid) if pid not in (None, "", 0, "0") else None
        values["target_id"] = int(values["target_id"])
        values.setdefault("worker", "local" if values["pid"] else "remote")
        values["extra"] = {k: v for k, v in data.items() if k not in known and k != "extra"}
        return cls(**values)


@dataclass
class BrokenLock:
    """A ``.lock`` file whose content cannot be parsed (empty or truncated)."""
    path: Path
    modified: float

    @property
    def key(self) -> Optional[JobKey]:
        source_id, _, target = self.path.stem.rpartition("-")
        if not source_id or not target.isdigit():
            return None
        return JobKey(source_id, int(target))

    def age(self, now: float) -> float:
        return max(0.0, now - self.modified)


class FileLockManager:
    """Lock records as JSON files named ``{source_id}-{target_id}.lock``.

    A new record is written to a temporary file first and published with
    ``os.link``, which fails when the lock path exists. Two acquirers of the
    same key can never both win, and a reader never sees a half-written lock.
    Updates rewrite the existing file in place and never create it, so a touch
    racing a release cannot bring a released lock back.
    """

    def __init__(self, lock_dir: str | Path, clock: Callable[[], float] = time.time):
        self.lock_dir = Path(lock_dir)
        self.clock = clock
        self._guard = threading.Lock()

    def path_for(self, key: JobKey) -> Path:
        return self.lock_dir / key.lock_name

    def acquire(self, key: JobKey, pid: Optional[int] = None, stage: str = "dispatching") -> LockRecord:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        now = self.clock()
        record = LockRecord(
            source_id=key.source_id,
            target_id=int(key.target_id),
            pid=pid,
            worker="local" if pid else "remote",
            started_at=_iso(now),
            started_timestamp=now,
            current_stage=stage,
            stage_updated_at=_iso(now),
        )
        path = self.path_for(key)
        fd, tmp = tempfile.mkstemp(dir=self.lock_dir, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record.to_dict(), fh, indent=2)
            os.chmod(tmp, 0o644)
            try:
                os.link(tmp, path)
            except FileExistsError:
                raise AlreadyLockedError(f"Migration {key} is already running (lock {path.name} exists)") from None
        finally:
            os.unlink(tmp)
        log.info("Lock acquired", extra=ctx(key, "lock"))
        return record

    def release(self, key: JobKey) -> None:
        path = self.path_for(key)
        with self._guard:
            try:
                path.unlink()
            except FileNotFoundError:
                raise LockNotFoundError(f"No lock for migration {key}") from None
        log.info("Lock released", extra=ctx(key, "lock"))

    def get(self, key: JobKey) -> Optional[LockRecord]:
        return self._read(self.path_for(key))

    def exists(self, key: JobKey) -> bool:
        return self.path_for(key).exists()

    def touch(self, key: JobKey, **updates) -> LockRecord:
        unknown = set(updates) - TOUCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Lock fields cannot be touched: {sorted(unknown)}")
        return self._update(key, updates)

    def mark_checked(self, key: JobKey) -> LockRecord:
        now = self.clock()
        return self.touch(key, last_check=_iso(now), last_check_timestamp=now)

    def heartbeat(self, key: JobKey, stage: Optional[str] = None) -> LockRecord:
        updates: Dict[str, object] = {"last_heartbeat_timestamp": self.clock()}
        if stage:
            updates["current_stage"] = stage
        return self.touch(key, **updates)

    def register_worker(self, key: JobKey, pid: int) -> LockRecord:
        """Record the worker's PID on a lock created without one.

        The PID can be set once; registering the same PID again is a no-op,
        a different PID is refused.
        """
        if pid <= 0:
            raise ValueError(f"Invalid worker pid {pid}")
        path = self.path_for(key)
        with self._guard:
            record = self._read(path)
            if record is None:
                raise LockNotFoundError(f"No lock for migration {key}")
            if record.pid == pid:
                return record
            if record.pid is not None:
                raise AlreadyLockedError(f"Lock for migration {key} already belongs to pid {record.pid}")
            data = record.to_dict()
            data.update(pid=pid, worker="local")
            self._rewrite_in_place(path, data)
        log.info("Worker pid %d registered", pid, extra=ctx(key, "lock"))
        return LockRecord.from_dict(data)

    def list_all(self) -> List[LockRecord]:
        return [r for r in self.scan() if isinstance(r, LockRecord)]

    def scan(self) -> List[LockRecord | BrokenLock]:
        """Every lock file in the directory, parsed or flagged as broken."""
        if not self.lock_dir.is_dir():
            return []
        found: List[LockRecord | BrokenLock] = []
        for path in sorted(self.lock_dir.glob("*.lock")):
            record = self._read(path)
            if record is not None:
                found.append(record)
                continue
            try:
                found.append(BrokenLock(path, path.stat().st_mtime))
            except FileNotFoundError:
                continue
        return found

    def remove_broken(self, broken: BrokenLock) -> bool:
        with self._guard:
            if self._read(broken.path) is not None:
                return False
            try:
                broken.path.unlink()
            except FileNotFoundError:
                return False
        log.warning("Unreadable lock file %s removed", broken.path.name, extra=ctx(broken.key or broken.path.name, "lock"))
        return True

    def find_by_target(self, target_id: int) -> Optional[LockRecord]:
        matches = [r for r in self.list_all() if int(r.target_id) == int(target_id)]
        if not matches:
            return None
        return max(matches, key=lambda r: r.started_timestamp)

    def _update(self, key: JobKey, updates: Dict[str, Any]) -> LockRecord:
        path = self.path_for(key)
        with self._guard:
            record = self._read(path)
            if record is None:
                raise LockNotFoundError(f"No lock for migration {key}")
            data = record.to_dict()
            data.update(updates)
            if "current_stage" in updates and "stage_updated_at" not in updates:
                data["stage_updated_at"] = _iso(self.clock())
            self._rewrite_in_place(path, data)
        return LockRecord.from_dict(data)

    def _read(self, path: Path) -> Optional[LockRecord]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
            return LockRecord.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning("Unreadable lock file %s: %s", path.name, e, extra=ctx(stage="lock"))
            return None

    def _rewrite_in_place(self, path: Path, data: dict) -> None:
        try:
            fd = os.open(path, os.O_RDWR)
        except FileNotFoundError:
            raise LockNotFoundError(f"Lock {path.name} disappeared while being updated") from None
        with os.fdopen(fd, "r+", encoding="utf-8") as fh:
            fh.seek(0)
            fh.truncate()
            json.dump(data, fh, indent=2)
            fh.flush()
