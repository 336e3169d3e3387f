from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
from dashboard.api.deps import get_api_client
from dashboard.core.config import settings
from dashboard.core.migration_api import MigrationApiClient
from dashboard.db.session import get_db
from dashboard.schemas.jobs import CommandResponse

router = APIRouter()


@router.get("/health", response_model=CommandResponse)
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return CommandResponse(success=True, message=f"{settings.app_name} is up", data={"env": settings.app_env})


@router.get("/migration-server/health", response_model=CommandResponse)
def migration_server_health(api: MigrationApiClient = Depends(get_api_client)):
    info = api.health()
    return CommandResponse(
        success=info["available"],
        message=info["message"],
        error=None if info["available"] else info["message"],
        data=info,
    )
