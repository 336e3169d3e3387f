import logging
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from alembic.config import Config
from alembic import command
from dashboard.core.config import settings
from dashboard.core.errors import CoordinatorError, RejectedByRemote, TransportError
from dashboard.core.logging import configure_logging, ctx
from dashboard.api.routes import router as api_router
from dashboard.db.session import engine

configure_logging()
log = logging.getLogger(__name__)


def wait_for_database(bind=engine, attempts: int = 30, delay: float = 1.0) -> None:
    """Block until the database answers a trivial query."""
    for attempt in range(1, attempts + 1):
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            if attempt == attempts:
                log.error("Database unreachable after %d attempts", attempts, extra=ctx(stage="startup"))
                raise
            log.warning("Database not ready (attempt %d/%d): %s; retrying in %ss",
                        attempt, attempts, e, delay, extra=ctx(stage="startup"))
            time.sleep(delay)
        else:
            log.info("Database reachable (%s)", bind.url.get_backend_name(), extra=ctx(stage="startup"))
            return


def run_migrations(config_path: str = "alembic.ini") -> None:
    """Upgrade the schema to the latest Alembic revision."""
    log.info("Upgrading schema to head", extra=ctx(stage="startup"))
    command.upgrade(Config(config_path), "head")
    log.info("Schema is up to date", extra=ctx(stage="startup"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting dashboard API...", extra=ctx(stage="startup"))
    try:
        wait_for_database()
        run_migrations()
    except Exception:
        log.exception("Dashboard startup failed", extra=ctx(stage="startup"))
        raise
    yield
    log.info("Shutting down dashboard API...", extra=ctx(stage="shutdown"))


async def coordinator_error_handler(request: Request, exc: CoordinatorError) -> JSONResponse:
    body = {"success": False, "error": exc.message, "error_type": type(exc).__name__}
    if isinstance(exc, (RejectedByRemote, TransportError)):
        body["remote_status"] = exc.status_code
    if isinstance(exc, RejectedByRemote):
        body["remote_body"] = exc.body
    return JSONResponse(status_code=exc.http_status, content=body)


def create_app(with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan if with_lifespan else None,
    )
    app.add_exception_handler(CoordinatorError, coordinator_error_handler)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
