"""Shared fixtures: in-memory database, fake migration server, fake clock and processes."""
import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_DIR", tempfile.mkdtemp(prefix="dashboard-cache-"))

from typing import Callable, Dict, List, Union

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dashboard.core.http_client import ResilientHttpClient
from dashboard.core.migration_api import MigrationApiClient
from dashboard.core.workflow import JobKey
from dashboard.db.session import Base
from dashboard.db import models  # noqa
from dashboard.locks.manager import FileLockManager
from dashboard.monitor.process import KillOutcome
from dashboard.services.jobs import JobStateMachine
from dashboard.services.waves import WaveAggregator
from dashboard.services.webhook import WebhookCorrelator

MIGRATOR_URL = "http://migrator.test"
DASHBOARD_URL = "http://dashboard.test"
SITE_ID = 7
SECRET = "s3cret-token"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Reply = Union[tuple, Callable[[httpx.Request], httpx.Response]]


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


class FakeMigrationServer:
    """Scripted remote: per path a queue of replies, the last one repeats.

    A reply is ``(status, json_body)`` or a callable taking the request.
    Unscripted paths answer 200 ``{"status": "queued"}``.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, List[Reply]] = {}

    def reply(self, path: str, *replies: Reply) -> None:
        self.routes[path] = list(replies)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(200, json={"status": "queued"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            return item(request)
        status, body = item
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


class FakeProcesses:
    """Process table standing in for psutil probing and termination."""

    def __init__(self):
        self.alive = set()
        self.terminated = []

    def probe(self, pid) -> bool:
        return pid in self.alive

    def terminate(self, pid: int, force: bool = False, grace: float = 0.0) -> KillOutcome:
        self.terminated.append((pid, force))
        if pid not in self.alive:
            return KillOutcome(pid, "none", False, "Process not found or not running")
        self.alive.discard(pid)
        return KillOutcome(pid, "SIGKILL" if force else "SIGTERM", True, "Process terminated")


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def remote():
    return FakeMigrationServer()


@pytest.fixture
def processes():
    return FakeProcesses()


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def locks(cache_dir, clock):
    return FileLockManager(cache_dir, clock=clock)


@pytest.fixture
def http(remote, sleeps):
    return ResilientHttpClient(attempts=3, delay=5.0, timeout=1.0, backoff="fixed",
                               transport=remote.transport, sleep=sleeps.append)


@pytest.fixture
def api(http):
    return MigrationApiClient(base_url=MIGRATOR_URL, dashboard_base_url=DASHBOARD_URL, http=http)


@pytest.fixture
def machine(db, locks, api, cache_dir, clock, processes):
    return JobStateMachine(
        db=db,
        locks=locks,
        api=api,
        cache_dir=str(cache_dir),
        stale_after=600,
        default_site_id=None,
        default_secret=None,
        clock=clock,
        probe=processes.probe,
        terminate=processes.terminate,
    )


@pytest.fixture
def waves(db, machine, clock):
    return WaveAggregator(db=db, machine=machine, clock=clock)


@pytest.fixture
def correlator(machine, waves):
    return WebhookCorrelator(machine, waves)


@pytest.fixture
def start_job(machine):
    """Dispatch a job with valid credentials and return its key."""
    def _start(source_id: str = "src-1", target_id: int = 101, **values):
        key = JobKey(source_id, target_id)
        machine.run(machine.build_request(key, {"site_id": SITE_ID, "secret": SECRET, **values}))
        return key
    return _start
