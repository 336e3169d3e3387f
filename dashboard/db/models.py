from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy import String, DateTime, Integer, JSON, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from dashboard.db.session import Base
from dashboard.core.workflow import JobKey, JobStatus

class MigrationJob(Base):
    __tablename__ = "migration_jobs"
    __table_args__ = (
        UniqueConstraint("source_id", "target_id", name="uq_migration_jobs_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    source_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value, nullable=False)
    params: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    last_result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    wave_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def key(self) -> JobKey:
        return JobKey(self.source_id, self.target_id)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)


class MigrationResult(Base):
    """Append-only history of results applied to a job."""
    __tablename__ = "migration_results"
    __table_args__ = (
        Index("ix_migration_results_target_created", "target_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    source_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wave_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    result_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    result_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class Wave(Base):
    __tablename__ = "waves"

    wave_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    # Ordered [[source_id, target_id], ...]; insertion order is dispatch order.
    members: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    progress_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def member_keys(self) -> list[JobKey]:
        return [JobKey(str(s), int(t)) for s, t in self.members]
