from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from dashboard.core.logging import ctx
from dashboard.core.workflow import JobKey, JobStatus
from dashboard.db.models import MigrationJob, MigrationResult, Wave

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobRepository:
    """Persistence of job rows and their result history."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: JobKey) -> Optional[MigrationJob]:
        return self.db.scalar(
            select(MigrationJob).where(
                MigrationJob.source_id == key.source_id,
                MigrationJob.target_id == int(key.target_id),
            )
        )

    def get_by_target(self, target_id: int) -> Optional[MigrationJob]:
        return self.db.scalar(
            select(MigrationJob)
            .where(MigrationJob.target_id == int(target_id))
            .order_by(MigrationJob.updated_at.desc())
            .limit(1)
        )

    def list_for_keys(self, keys: Iterable[JobKey]) -> List[MigrationJob]:
        return [job for job in (self.get(k) for k in keys) if job is not None]

    def get_or_create(self, key: JobKey, wave_id: Optional[str] = None) -> MigrationJob:
        job = self.get(key)
        if job is not None:
            return job
        job = MigrationJob(
            source_id=key.source_id,
            target_id=int(key.target_id),
            status=JobStatus.PENDING.value,
            params={},
            wave_id=wave_id,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            # Created concurrently by another request.
            self.db.rollback()
            job = self.get(key)
            if job is None:
                raise
            return job
        self.db.refresh(job)
        log.info("Job record created", extra=ctx(key, "persist"))
        return job

    def save(self, job: MigrationJob) -> MigrationJob:
        job.updated_at = utcnow()
        self.db.add(job)
        self.db.commit()
        return job

    def compare_and_set(self, key: JobKey, expected: Iterable[JobStatus], **values) -> bool:
        """Apply ``values`` only if the job's status is still one of ``expected``.

        This is the single write path for status transitions; two racing
        writers can never both win.
        """
        allowed = [JobStatus(s).value for s in expected]
        if "status" in values:
            values["status"] = JobStatus(values["status"]).value
        values["updated_at"] = utcnow()
        result = self.db.execute(
            update(MigrationJob)
            .where(
                MigrationJob.source_id == key.source_id,
                MigrationJob.target_id == int(key.target_id),
                MigrationJob.status.in_(allowed),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return result.rowcount == 1

    def record_result(self, key: JobKey, status: JobStatus, channel: str,
                      result: Optional[dict], result_hash: Optional[str],
                      wave_id: Optional[str] = None) -> MigrationResult:
        row = MigrationResult(
            source_id=key.source_id,
            target_id=int(key.target_id),
            wave_id=wave_id,
            status=JobStatus(status).value,
            channel=channel,
            result_hash=result_hash,
            result_json=result,
        )
        self.db.add(row)
        self.db.commit()
        return row

    def latest_result_for_target(self, target_id: int) -> Optional[MigrationResult]:
        return self.db.scalar(
            select(MigrationResult)
            .where(MigrationResult.target_id == int(target_id))
            .order_by(MigrationResult.created_at.desc(), MigrationResult.id.desc())
            .limit(1)
        )


class WaveRepository:

    def __init__(self, db: Session):
        self.db = db

    def add(self, wave: Wave) -> Wave:
        self.db.add(wave)
        self.db.commit()
        self.db.refresh(wave)
        return wave

    def get(self, wave_id: str) -> Optional[Wave]:
        return self.db.get(Wave, wave_id)

    def list(self) -> List[Wave]:
        return list(self.db.scalars(select(Wave).order_by(Wave.created_at.desc())))

    def save(self, wave: Wave) -> Wave:
        wave.updated_at = utcnow()
        self.db.add(wave)
        self.db.commit()
        return wave
