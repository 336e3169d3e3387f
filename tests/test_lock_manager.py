"""File lock records: mutual exclusion and in-place updates."""
import json
import threading
import pytest
from dashboard.core.errors import AlreadyLockedError, LockNotFoundError
from dashboard.core.workflow import JobKey
from dashboard.locks.manager import BrokenLock, FileLockManager, LockRecord

KEY = JobKey("3c56530e", 1234)


def test_acquire_writes_json_record(locks, clock):
    record = locks.acquire(KEY, pid=4242)

    data = json.loads(locks.path_for(KEY).read_text())
    assert locks.path_for(KEY).name == "3c56530e-1234.lock"
    assert data["source_id"] == "3c56530e"
    assert data["target_id"] == 1234
    assert data["pid"] == 4242
    assert data["worker"] == "local"
    assert data["started_timestamp"] == clock.now
    assert data["current_stage"] == "dispatching"
    assert record.is_local


def test_second_acquire_fails(locks):
    locks.acquire(KEY)

    with pytest.raises(AlreadyLockedError):
        locks.acquire(KEY)


def test_release_then_acquire_again(locks):
    locks.acquire(KEY)
    locks.release(KEY)

    assert not locks.exists(KEY)
    locks.acquire(KEY)
    assert locks.exists(KEY)


def test_release_missing_lock(locks):
    with pytest.raises(LockNotFoundError):
        locks.release(KEY)


def test_concurrent_acquire_has_single_winner(locks):
    barrier = threading.Barrier(8)
    winners, losers = [], []

    def contend(i):
        barrier.wait()
        try:
            locks.acquire(KEY, pid=1000 + i)
            winners.append(i)
        except AlreadyLockedError:
            losers.append(i)

    threads = [threading.Thread(target=contend, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == 7
    assert locks.get(KEY).pid == 1000 + winners[0]


def test_touch_updates_only_allowed_fields(locks, clock):
    locks.acquire(KEY, pid=1)
    clock.advance(30)

    record = locks.mark_checked(KEY)

    assert record.last_check_timestamp == clock.now
    assert locks.get(KEY).last_check_timestamp == clock.now
    with pytest.raises(ValueError):
        locks.touch(KEY, pid=2)


def test_heartbeat_records_stage(locks, clock):
    locks.acquire(KEY)
    clock.advance(12)

    record = locks.heartbeat(KEY, stage="pages")

    assert record.current_stage == "pages"
    assert record.last_heartbeat_timestamp == clock.now
    assert record.silence(clock.now + 5) == 5
    assert record.age(clock.now) == 12


def test_touch_never_recreates_released_lock(locks):
    locks.acquire(KEY)
    locks.release(KEY)

    with pytest.raises(LockNotFoundError):
        locks.heartbeat(KEY, stage="late")
    assert not locks.exists(KEY)


def test_list_all_skips_unreadable_files(locks, cache_dir):
    locks.acquire(KEY)
    locks.acquire(JobKey("other", 5))
    (cache_dir / "broken-9.lock").write_text("{not json")

    keys = {r.key for r in locks.list_all()}

    assert keys == {KEY, JobKey("other", 5)}


def test_acquire_publishes_complete_record_without_leftovers(locks, cache_dir):
    locks.acquire(KEY)

    assert [p.name for p in cache_dir.iterdir()] == ["3c56530e-1234.lock"]
    assert json.loads(locks.path_for(KEY).read_text())["source_id"] == "3c56530e"


def test_worker_fields_survive_updates(locks):
    locks.acquire(KEY)
    path = locks.path_for(KEY)
    data = json.loads(path.read_text())
    data.update(total_pages=20, processed_pages=5, progress_percent=25)
    path.write_text(json.dumps(data))

    locks.heartbeat(KEY, stage="pages")
    locks.mark_checked(KEY)

    stored = json.loads(path.read_text())
    assert (stored["total_pages"], stored["processed_pages"], stored["progress_percent"]) == (20, 5, 25)
    assert stored["current_stage"] == "pages"
    assert locks.get(KEY).progress == {"total_pages": 20, "processed_pages": 5, "progress_percent": 25}


def test_register_worker_fills_pid_once(locks):
    locks.acquire(KEY)

    record = locks.register_worker(KEY, 4242)

    assert record.pid == 4242
    assert record.worker == "local"
    assert locks.get(KEY).is_local
    assert locks.register_worker(KEY, 4242).pid == 4242
    with pytest.raises(AlreadyLockedError):
        locks.register_worker(KEY, 777)
    with pytest.raises(ValueError):
        locks.register_worker(KEY, 0)


def test_register_worker_without_lock(locks):
    with pytest.raises(LockNotFoundError):
        locks.register_worker(KEY, 4242)


def test_scan_reports_empty_lock_file(locks, cache_dir):
    locks.acquire(JobKey("other", 5))
    empty = cache_dir / "3c56530e-1234.lock"
    empty.write_text("")

    broken = [e for e in locks.scan() if isinstance(e, BrokenLock)]

    assert len(broken) == 1
    assert broken[0].path == empty
    assert broken[0].key == KEY
    assert BrokenLock(cache_dir / "junk.lock", 0.0).key is None
    assert locks.remove_broken(broken[0])
    assert not empty.exists()
    locks.acquire(KEY)


def test_remove_broken_spares_repaired_file(locks, cache_dir):
    empty = cache_dir / "3c56530e-1234.lock"
    empty.write_text("")
    broken = [e for e in locks.scan() if isinstance(e, BrokenLock)][0]
    empty.unlink()
    locks.acquire(KEY)

    assert not locks.remove_broken(broken)
    assert locks.exists(KEY)


def test_find_by_target_returns_newest(locks, clock):
    locks.acquire(JobKey("old", 77))
    clock.advance(60)
    locks.acquire(JobKey("new", 77))

    assert locks.find_by_target(77).source_id == "new"
    assert locks.find_by_target(78) is None


def test_list_all_without_directory(tmp_path):
    assert FileLockManager(tmp_path / "missing").list_all() == []


@pytest.mark.parametrize("pid", [None, 0, "0", ""])
def test_record_without_pid_is_remote(pid):
    record = LockRecord.from_dict({
        "source_id": "s", "target_id": "3", "pid": pid,
        "started_at": "2026-01-01 00:00:00", "started_timestamp": 1.0,
    })
    assert record.pid is None
    assert record.worker == "remote"
    assert not record.is_local
    assert record.target_id == 3
