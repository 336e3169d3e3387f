"""Celery tasks executed inline."""
from contextlib import nullcontext
from dashboard.core.workflow import JobKey, JobStatus
from dashboard.services.registry import ServiceRegistry, service_scope
from dashboard.tasks import waves as wave_tasks
from dashboard.tasks.celery_app import celery_app
from dashboard.tasks.monitor import sweep_migration_locks
from tests.conftest import SECRET, SITE_ID


def test_beat_schedules_the_sweep():
    entry = celery_app.conf.beat_schedule["sweep-migration-locks"]
    assert entry["task"] == "sweep_migration_locks"
    assert entry["schedule"] == 10.0


def test_sweep_task_with_no_locks():
    report = sweep_migration_locks()
    assert report["checked"] == 0
    assert report["skipped"] is False


def test_start_wave_dispatches_members(monkeypatch, waves, machine, correlator):
    wave = waves.create_wave("Spring batch", [JobKey("alpha", 1), JobKey("beta", 2)])
    monkeypatch.setattr(wave_tasks, "service_scope", lambda: nullcontext(ServiceRegistry(machine, waves, correlator)))

    result = wave_tasks.start_wave(wave.wave_id, {"site_id": SITE_ID, "secret": SECRET})

    assert result == {"wave_id": wave.wave_id, "total": 2, "succeeded": 2, "failed": 0}
    assert machine.get_job(JobKey("beta", 2)).job_status == JobStatus.IN_PROGRESS


def test_start_wave_unknown(monkeypatch, waves, machine, correlator):
    monkeypatch.setattr(wave_tasks, "service_scope", lambda: nullcontext(ServiceRegistry(machine, waves, correlator)))

    assert wave_tasks.start_wave("1_1000")["total"] == 0


def test_service_scope_wires_shared_machine(session_factory):
    with service_scope(session_factory) as services:
        assert services.waves.machine is services.machine
        assert services.webhook.machine is services.machine
        assert services.waves.on_job_transition in services.machine._listeners
