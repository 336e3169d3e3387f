from fastapi import Depends
from sqlalchemy.orm import Session
from dashboard.core.config import settings
from dashboard.core.migration_api import MigrationApiClient
from dashboard.db.session import get_db
from dashboard.locks.manager import FileLockManager
from dashboard.services.registry import ServiceRegistry


def get_lock_manager() -> FileLockManager:
    return FileLockManager(settings.cache_dir)


def get_api_client() -> MigrationApiClient:
    return MigrationApiClient()


def get_services(
    db: Session = Depends(get_db),
    locks: FileLockManager = Depends(get_lock_manager),
    api: MigrationApiClient = Depends(get_api_client),
) -> ServiceRegistry:
    return ServiceRegistry.default(db, locks=locks, api=api)
