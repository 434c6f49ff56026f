"""Tests for per-job lock files."""
import os

from csv_importer.services.lock_file import LockFile


def test_lock_path_and_permissions(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))

    assert lock.path == tmp_path / "csv_import_csv_1.lock"
    assert lock.claim(1234)
    assert lock.read_pid() == 1234
    assert os.stat(lock.path).st_mode & 0o777 == 0o600


def test_claim_is_exclusive(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))

    assert lock.claim()
    assert not lock.claim(42)
    assert lock.read_pid() is None


def test_corrupt_lock_reads_as_empty(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))
    lock.path.write_text("not-a-pid")

    assert lock.read_pid() is None


def test_write_pid_without_create_leaves_missing_lock_missing(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))

    assert not lock.write_pid(99, create=False)
    assert not lock.exists()


def test_iter_locks(tmp_path):
    LockFile("csv_a", str(tmp_path)).claim(1)
    LockFile("csv_b", str(tmp_path)).claim(2)
    (tmp_path / "unrelated.txt").write_text("x")

    assert sorted(lock.job_id for lock in LockFile.iter_locks(str(tmp_path))) == ["csv_a", "csv_b"]
    assert list(LockFile.iter_locks(str(tmp_path / "missing"))) == []


def test_acquire_own_pid_written_by_supervisor(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))
    lock.claim()
    lock.write_pid(500, create=False)

    assert lock.acquire(500, is_alive=lambda pid: True, wait_seconds=0)


def test_acquire_refused_while_other_worker_alive(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))
    lock.write_pid(700)

    assert not lock.acquire(500, is_alive=lambda pid: pid == 700, wait_seconds=0)
    assert lock.read_pid() == 700


def test_acquire_takes_over_unfilled_claim(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))
    lock.claim()

    assert lock.acquire(500, is_alive=lambda pid: False, wait_seconds=0.1)
    assert lock.read_pid() == 500


def test_release_only_removes_own_lock(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))
    lock.write_pid(700)

    lock.release(500)
    assert lock.exists()

    lock.release(700)
    assert not lock.exists()


def test_release_if_held_ignores_empty_and_foreign_locks(tmp_path):
    lock = LockFile("csv_1", str(tmp_path))
    lock.claim()

    assert not lock.release_if_held(500)
    assert lock.exists()

    lock.write_pid(700, create=False)
    assert not lock.release_if_held(500)
    assert lock.release_if_held(700)
    assert not lock.exists()
