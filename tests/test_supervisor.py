"""Tests for worker process supervision using real child processes."""
import os
import subprocess
import sys
import time

import pytest

from csv_importer.models.job import JobStatus
from csv_importer.services.lock_file import LockFile
from csv_importer.services.process_supervisor import (
    KILLED_MESSAGE,
    PosixProcessSupervisor,
    get_process_supervisor,
)

from job_helpers import set_status

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX process semantics")

SLEEP_SCRIPT = "import time; time.sleep(60)"


class SleepingSupervisor(PosixProcessSupervisor):
    """Spawns a sleeping interpreter instead of the real worker."""

    script = SLEEP_SCRIPT

    def build_command(self, job_id):
        return [sys.executable, "-c", self.script]


@pytest.fixture
def supervisor(test_settings, session_factory):
    sup = SleepingSupervisor(test_settings, session_factory)
    yield sup
    for process in list(sup._processes.values()):
        if process.poll() is None:
            process.kill()
            process.wait()


def dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def test_get_process_supervisor_picks_posix(test_settings, session_factory):
    assert isinstance(get_process_supervisor(test_settings, session_factory), PosixProcessSupervisor)


def test_worker_command(test_settings, session_factory):
    sup = PosixProcessSupervisor(test_settings, session_factory)
    assert sup.build_command("csv_1") == [sys.executable, "-m", "csv_importer.worker", "csv_1"]


def test_start_records_pid_and_refuses_duplicate(supervisor, test_settings):
    """A second start while the first worker lives is refused."""
    assert supervisor.start("csv_dup")

    lock = LockFile("csv_dup", test_settings.LOCK_DIR)
    pid = lock.read_pid()
    assert pid is not None
    assert supervisor.is_pid_alive(pid)
    assert supervisor.is_running("csv_dup")
    assert oct(os.stat(lock.path).st_mode & 0o777) == oct(0o600)

    assert not supervisor.start("csv_dup")
    assert lock.read_pid() == pid
    assert len(supervisor._processes) == 1


def test_start_refuses_fresh_unfilled_claim(supervisor, test_settings):
    LockFile("csv_claimed", test_settings.LOCK_DIR).claim()

    assert not supervisor.start("csv_claimed")
    assert supervisor._processes == {}


def test_start_replaces_stale_lock(supervisor, test_settings):
    lock = LockFile("csv_stale", test_settings.LOCK_DIR)
    stale = dead_pid()
    lock.write_pid(stale)

    assert supervisor.start("csv_stale")
    assert lock.read_pid() not in (None, stale)


def test_concurrency_ceiling(supervisor, test_settings):
    supervisor.max_workers = 2

    assert supervisor.start("csv_a")
    assert supervisor.start("csv_b")
    assert supervisor.live_worker_count() == 2

    assert not supervisor.start("csv_c")
    assert not LockFile("csv_c", test_settings.LOCK_DIR).exists()


def test_spawn_retries_then_gives_up(supervisor, test_settings, monkeypatch):
    attempts = []

    def failing_spawn(command):
        attempts.append(command)
        raise OSError("fork failed")

    monkeypatch.setattr(supervisor, "_spawn", failing_spawn)

    assert not supervisor.start("csv_nospawn")
    assert len(attempts) == test_settings.SPAWN_RETRY_ATTEMPTS
    assert not LockFile("csv_nospawn", test_settings.LOCK_DIR).exists()


def test_spawn_succeeds_after_transient_error(supervisor, monkeypatch):
    real_spawn = supervisor._spawn
    attempts = []

    def flaky_spawn(command):
        attempts.append(command)
        if len(attempts) == 1:
            raise OSError("temporarily unavailable")
        return real_spawn(command)

    monkeypatch.setattr(supervisor, "_spawn", flaky_spawn)

    assert supervisor.start("csv_flaky")
    assert len(attempts) == 2


def test_worker_exiting_during_startup_is_reported(supervisor, test_settings):
    test_settings.SPAWN_SETTLE_SECONDS = 1.0
    supervisor.script = "raise SystemExit(3)"

    assert not supervisor.start("csv_crash")
    assert not LockFile("csv_crash", test_settings.LOCK_DIR).exists()


def test_is_running_false_without_lock(supervisor):
    assert not supervisor.is_running("csv_none")


def test_dead_and_invalid_pids_are_not_alive(supervisor):
    assert not supervisor.is_pid_alive(dead_pid())
    assert not supervisor.is_pid_alive(0)
    assert not supervisor.is_pid_alive(-1)
    assert supervisor.is_pid_alive(os.getpid())


def test_kill_running_worker(supervisor, test_settings, create_job, load_job, session_factory):
    """Killing a Processing job stops its worker and marks the job Failed."""
    job_id = create_job()
    assert supervisor.start(job_id)
    set_status(session_factory, job_id, JobStatus.PROCESSING)
    pid = LockFile(job_id, test_settings.LOCK_DIR).read_pid()

    assert supervisor.kill(job_id)

    assert not supervisor.is_pid_alive(pid)
    assert not supervisor.is_running(job_id)
    assert not LockFile(job_id, test_settings.LOCK_DIR).exists()
    job = load_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == KILLED_MESSAGE
    assert job.end_time is not None


def test_kill_escalates_to_sigkill(supervisor, test_settings, create_job, load_job, session_factory):
    test_settings.KILL_GRACE_SECONDS = 0.5
    supervisor.script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "time.sleep(60)\n"
    )
    job_id = create_job()
    assert supervisor.start(job_id)
    pid = LockFile(job_id, test_settings.LOCK_DIR).read_pid()
    # Let the child install its SIGTERM handler
    time.sleep(0.5)
    set_status(session_factory, job_id, JobStatus.PROCESSING)

    assert supervisor.kill(job_id)
    assert not supervisor.is_pid_alive(pid)
    assert load_job(job_id).status == JobStatus.FAILED


def test_kill_refused_unless_processing(supervisor, create_job, load_job):
    job_id = create_job()
    assert supervisor.start(job_id)

    assert not supervisor.kill(job_id)
    assert supervisor.is_running(job_id)
    assert load_job(job_id).status == JobStatus.PENDING


def test_kill_without_lock(supervisor, create_job, load_job, session_factory):
    job_id = create_job()
    set_status(session_factory, job_id, JobStatus.PROCESSING)

    assert not supervisor.kill(job_id)
    assert load_job(job_id).status == JobStatus.PROCESSING
