"""Wave creation, batched restarts and progress recomputation."""
import httpx
import pytest
from dashboard.core.errors import ValidationFailure, WaveNotFound
from dashboard.core.workflow import JobKey, JobStatus, WaveStatus, is_wave_id
from dashboard.services.waves import WaveProgress, derive_wave_status, new_wave_id
from tests.conftest import SECRET, SITE_ID

MEMBERS = [JobKey("alpha", 1), JobKey("beta", 2), JobKey("gamma", 3)]
CREDENTIALS = {"site_id": SITE_ID, "secret": SECRET}


def test_wave_id_format(clock):
    wave_id = new_wave_id(clock)
    assert is_wave_id(wave_id)
    assert wave_id.startswith("1700000000_")
    assert 1000 <= int(wave_id.split("_")[1]) <= 9999


@pytest.mark.parametrize("total,completed,failed,pending,expected", [
    (3, 2, 1, 0, WaveStatus.COMPLETED),
    (3, 3, 0, 0, WaveStatus.COMPLETED),
    (3, 0, 0, 3, WaveStatus.PENDING),
    (3, 1, 0, 2, WaveStatus.IN_PROGRESS),
    (3, 0, 0, 0, WaveStatus.IN_PROGRESS),
    (3, 0, 3, 0, WaveStatus.COMPLETED),
    (3, 0, 1, 2, WaveStatus.IN_PROGRESS),
])
def test_derive_wave_status(total, completed, failed, pending, expected):
    assert derive_wave_status(WaveProgress(total, completed, failed), pending) == expected


def test_create_wave_registers_members(waves, machine):
    wave = waves.create_wave("Spring batch", MEMBERS + [MEMBERS[0]], batch_size=2)

    assert is_wave_id(wave.wave_id)
    assert wave.member_keys == MEMBERS
    assert wave.status == WaveStatus.PENDING.value
    assert wave.progress_total == 3
    assert all(machine.get_job(k).wave_id == wave.wave_id for k in MEMBERS)


@pytest.mark.parametrize("name,members,batch_size", [
    ("", MEMBERS, 3),
    ("empty", [], 3),
    ("zero batch", MEMBERS, 0),
])
def test_create_wave_validation(waves, name, members, batch_size):
    with pytest.raises(ValidationFailure):
        waves.create_wave(name, members, batch_size=batch_size)


def test_unknown_wave(waves):
    with pytest.raises(WaveNotFound):
        waves.get_wave("1_1000")


def test_two_completed_one_failed_completes_wave(waves, machine, correlator, remote):
    wave = waves.create_wave("Spring batch", MEMBERS, batch_size=2)

    report = waves.restart_all(wave.wave_id, overrides=CREDENTIALS)

    assert report.succeeded == 3
    assert [r.url.params["mb_project_uuid"] for r in remote.calls("/")] == ["alpha", "beta", "gamma"]
    assert all(r.url.params["wave_id"] == wave.wave_id for r in remote.calls("/"))
    assert waves.get_wave(wave.wave_id).status == WaveStatus.IN_PROGRESS.value

    for key, status in zip(MEMBERS, ["success", "success", "error"]):
        correlator.ingest({
            "mb_project_uuid": key.source_id,
            "brz_project_id": key.target_id,
            "status": status,
            "migration_uuid": wave.wave_id,
        })

    wave = waves.get_wave(wave.wave_id)
    assert wave.status == WaveStatus.COMPLETED.value
    assert (wave.progress_total, wave.progress_completed, wave.progress_failed) == (3, 2, 1)
    assert wave.completed_at is not None


def test_restart_all_reports_partial_failures(waves, machine, remote):
    def server(request):
        if request.url.params["mb_project_uuid"] == "beta":
            return httpx.Response(500, json={"error": "down"})
        return httpx.Response(200, json={"status": "queued"})

    remote.reply("/", server)
    wave = waves.create_wave("Spring batch", MEMBERS, batch_size=3)

    report = waves.restart_all(wave.wave_id, overrides=CREDENTIALS)

    assert (report.total, report.succeeded, report.failed) == (3, 2, 1)
    failed = [m for m in report.members if not m.success]
    assert failed[0].source_id == "beta"
    assert "HTTP 500" in failed[0].error
    assert machine.get_job(MEMBERS[1]).job_status == JobStatus.PENDING
    assert waves.get_wave(wave.wave_id).status == WaveStatus.IN_PROGRESS.value


def test_restart_selected_members(waves, remote):
    wave = waves.create_wave("Spring batch", MEMBERS)

    report = waves.restart_all(wave.wave_id, ["gamma"], CREDENTIALS)

    assert [m.source_id for m in report.members] == ["gamma"]
    assert len(remote.calls("/")) == 1


def test_restart_member(waves):
    wave = waves.create_wave("Spring batch", MEMBERS)

    member = waves.restart_member(wave.wave_id, "beta", CREDENTIALS)

    assert member.success
    assert member.status == JobStatus.IN_PROGRESS.value
    with pytest.raises(ValidationFailure):
        waves.restart_member(wave.wave_id, "nobody", CREDENTIALS)


def test_member_in_progress_is_reported_not_raised(waves):
    wave = waves.create_wave("Spring batch", MEMBERS)
    waves.restart_all(wave.wave_id, overrides=CREDENTIALS)

    report = waves.restart_all(wave.wave_id, overrides=CREDENTIALS)

    assert report.failed == 3
    assert all("already in progress" in m.error for m in report.members)


def test_reset_wave_status(waves, machine, correlator):
    wave = waves.create_wave("Spring batch", MEMBERS)
    waves.restart_all(wave.wave_id, overrides=CREDENTIALS)
    correlator.ingest({"mb_project_uuid": "alpha", "brz_project_id": 1, "status": "success"})

    result = waves.reset_wave_status(wave.wave_id)

    assert result["success"]
    assert result["progress"] == {"total": 3, "completed": 0, "failed": 0}
    assert all(machine.get_job(k).job_status == JobStatus.PENDING for k in MEMBERS)
    wave = waves.get_wave(wave.wave_id)
    assert wave.status == WaveStatus.PENDING.value
    assert wave.completed_at is None


def test_list_waves(waves, clock):
    first = waves.create_wave("first", MEMBERS[:1])
    clock.advance(5)
    second = waves.create_wave("second", MEMBERS[1:])

    assert {w.wave_id for w in waves.list_waves()} == {first.wave_id, second.wave_id}
