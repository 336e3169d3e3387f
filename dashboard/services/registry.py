from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator
from sqlalchemy.orm import Session
from dashboard.core.config import settings
from dashboard.core.migration_api import MigrationApiClient
from dashboard.locks.manager import FileLockManager
from dashboard.services.jobs import JobStateMachine
from dashboard.services.waves import WaveAggregator
from dashboard.services.webhook import WebhookCorrelator


@dataclass
class ServiceRegistry:
    machine: JobStateMachine
    waves: WaveAggregator
    webhook: WebhookCorrelator

    @staticmethod
    def default(db: Session, locks: FileLockManager | None = None,
                api: MigrationApiClient | None = None) -> "ServiceRegistry":
        machine = JobStateMachine(
            db=db,
            locks=locks or FileLockManager(settings.cache_dir),
            api=api or MigrationApiClient(),
        )
        waves = WaveAggregator(db=db, machine=machine)
        return ServiceRegistry(machine=machine, waves=waves, webhook=WebhookCorrelator(machine, waves))


@contextmanager
def service_scope(session_factory=None) -> Iterator[ServiceRegistry]:
    """Services bound to a fresh session, for work outside a request."""
    if session_factory is None:
        from dashboard.db.session import SessionLocal
        session_factory = SessionLocal
    db = session_factory()
    try:
        yield ServiceRegistry.default(db)
    finally:
        db.close()


@contextmanager
def machine_scope(session_factory=None) -> Iterator[JobStateMachine]:
    with service_scope(session_factory) as services:
        yield services.machine
