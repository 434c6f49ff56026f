"""
Supervisor for out-of-process import workers.

One worker process runs the import engine for one job id. The supervisor
spawns it detached from the caller, guards against duplicate workers with
the job's lock file, caps the number of live workers, and can terminate a
running worker on request.
"""
import os
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from csv_importer.app.db.database import get_session_factory
from csv_importer.exceptions import InvalidStatusTransition
from csv_importer.models.job import JobStatus
from csv_importer.repositories.job_repository import JobRepository
from csv_importer.services.lock_file import LockFile
from csv_importer.settings import Settings, settings as default_settings
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)

KILLED_MESSAGE = "Process terminated by user"
WORKER_MODULE = "csv_importer.worker"


class ProcessSupervisor(ABC):
    """Platform-independent worker lifecycle; subclasses supply OS specifics."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None
    ):
        """
        Initialize supervisor.

        Args:
            config: Settings with lock, retry and concurrency options
            session_factory: Factory for database sessions used by kill()
        """
        self.config = config or default_settings
        self.session_factory = session_factory or get_session_factory(self.config)
        self.job_repo = JobRepository
        self.lock_dir = self.config.LOCK_DIR
        self.max_workers = self.config.MAX_CONCURRENT_WORKERS
        self.retry_attempts = max(1, self.config.SPAWN_RETRY_ATTEMPTS)
        self.retry_delay = self.config.SPAWN_RETRY_DELAY_SECONDS
        self._processes: Dict[int, subprocess.Popen] = {}

        Path(self.lock_dir).mkdir(parents=True, exist_ok=True)

    def lock_for(self, job_id: str) -> LockFile:
        return LockFile(job_id, self.lock_dir)

    def build_command(self, job_id: str) -> List[str]:
        """Argument vector for a worker bound to job_id."""
        return [self.config.WORKER_PYTHON, "-m", WORKER_MODULE, job_id]

    def start(self, job_id: str) -> bool:
        """
        Start a worker for a job.

        Args:
            job_id: Job ID

        Returns:
            True if a worker was spawned; False on a duplicate start, when the
            concurrency ceiling is reached, or after spawn retries ran out
        """
        lock = self.lock_for(job_id)

        if lock.exists():
            pid = lock.read_pid()
            if pid is not None and self.is_pid_alive(pid):
                logger.warning(
                    "Worker already running for job",
                    extra={"job_id": job_id, "worker_pid": pid}
                )
                return False
            if pid is None and lock.age() < self.config.LOCK_CLAIM_TIMEOUT_SECONDS:
                logger.warning(
                    "Worker start already in progress for job",
                    extra={"job_id": job_id}
                )
                return False
            logger.warning(
                "Removing stale lock file",
                extra={"job_id": job_id, "stale_pid": pid}
            )
            lock.remove()

        live_workers = self.live_worker_count()
        if live_workers >= self.max_workers:
            logger.warning(
                "Max concurrent workers reached",
                extra={
                    "job_id": job_id,
                    "live_workers": live_workers,
                    "max_workers": self.max_workers
                }
            )
            return False

        if not lock.claim():
            logger.warning("Lost race to claim job lock", extra={"job_id": job_id})
            return False

        process = self._spawn_with_retry(job_id)
        if process is None:
            lock.remove()
            return False

        self._processes[process.pid] = process
        lock.write_pid(process.pid, create=False)

        if self.config.SPAWN_SETTLE_SECONDS > 0:
            time.sleep(self.config.SPAWN_SETTLE_SECONDS)
        returncode = process.poll()
        if returncode not in (None, 0):
            logger.error(
                "Worker exited during start-up",
                extra={"job_id": job_id, "worker_pid": process.pid, "returncode": returncode}
            )
            lock.release(process.pid)
            return False

        logger.info(
            "Worker started",
            extra={"job_id": job_id, "worker_pid": process.pid}
        )

        return True

    def _spawn_with_retry(self, job_id: str) -> Optional[subprocess.Popen]:
        command = self.build_command(job_id)

        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self._spawn(command)
            except OSError as e:
                logger.warning(
                    "Failed to spawn worker",
                    extra={
                        "job_id": job_id,
                        "attempt": attempt,
                        "max_attempts": self.retry_attempts,
                        "error": str(e)
                    }
                )
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_delay)

        logger.error(
            "Giving up spawning worker",
            extra={"job_id": job_id, "attempts": self.retry_attempts}
        )
        return None

    def is_running(self, job_id: str) -> bool:
        """Whether the PID recorded for the job is a live process."""
        pid = self.lock_for(job_id).read_pid()
        return pid is not None and self.is_pid_alive(pid)

    def live_worker_count(self) -> int:
        """Number of lock files, across all jobs, whose PID is alive."""
        count = 0
        for lock in LockFile.iter_locks(self.lock_dir):
            pid = lock.read_pid()
            if pid is not None and self.is_pid_alive(pid):
                count += 1
        return count

    def kill(self, job_id: str) -> bool:
        """
        Terminate the worker of a Processing job and mark the job Failed.

        Progress since the last checkpoint is lost.

        Args:
            job_id: Job ID

        Returns:
            True if the worker was stopped and the job marked Failed
        """
        db = self.session_factory()
        try:
            if not self.job_repo.exists_in_status(db, job_id, [JobStatus.PROCESSING]):
                logger.info("Job is not processing, nothing to kill", extra={"job_id": job_id})
                return False

            lock = self.lock_for(job_id)
            pid = lock.read_pid()
            if pid is None:
                logger.warning("No worker PID recorded for job", extra={"job_id": job_id})
                return False

            if not self._terminate(pid):
                logger.error(
                    "Failed to terminate worker",
                    extra={"job_id": job_id, "worker_pid": pid}
                )
                return False

            try:
                self.job_repo.finalize(db, job_id, JobStatus.FAILED, error_message=KILLED_MESSAGE)
            except InvalidStatusTransition:
                logger.warning(
                    "Job reached a terminal status before it was killed",
                    extra={"job_id": job_id}
                )
                return False
            finally:
                lock.remove()

            logger.info(
                "Worker terminated by user",
                extra={"job_id": job_id, "worker_pid": pid}
            )
            return True

        except Exception as e:
            logger.error(
                "Error killing worker",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True
            )
            return False
        finally:
            db.close()

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while self.is_pid_alive(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)
        return True

    def _reap(self, pid: int) -> Optional[bool]:
        """
        Check a child we spawned ourselves.

        Returns:
            True/False for our own children, None for other processes
        """
        process = self._processes.get(pid)
        if process is None:
            return None
        if process.poll() is None:
            return True
        self._processes.pop(pid, None)
        return False

    @abstractmethod
    def is_pid_alive(self, pid: int) -> bool:
        """OS-specific liveness probe."""

    @abstractmethod
    def _spawn(self, command: List[str]) -> subprocess.Popen:
        """Start a detached process."""

    @abstractmethod
    def _terminate(self, pid: int) -> bool:
        """Stop a process, gracefully first."""


class PosixProcessSupervisor(ProcessSupervisor):
    """Supervisor for Linux, macOS and other POSIX systems."""

    def is_pid_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False

        own_child = self._reap(pid)
        if own_child is not None:
            return own_child

        # Reap zombies of children we no longer hold a handle for
        try:
            os.waitpid(pid, os.WNOHANG)
        except OSError:
            pass

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return self._proc_alive(pid)

        zombie = self._proc_is_zombie(pid)
        return not zombie

    @staticmethod
    def _proc_alive(pid: int) -> bool:
        """Fallback probe through /proc where it exists."""
        proc = Path(f"/proc/{pid}")
        if not Path("/proc/self").exists():
            return False
        return proc.exists() and not PosixProcessSupervisor._proc_is_zombie(pid)

    @staticmethod
    def _proc_is_zombie(pid: int) -> bool:
        try:
            status = Path(f"/proc/{pid}/status").read_text()
        except OSError:
            return False
        for line in status.splitlines():
            if line.startswith("State:"):
                return "Z" in line.split(":", 1)[1].split()[0]
        return False

    def _spawn(self, command: List[str]) -> subprocess.Popen:
        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
        )

    def _terminate(self, pid: int) -> bool:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False

        if self._wait_for_exit(pid, self.config.KILL_GRACE_SECONDS):
            return True

        logger.warning("Worker ignored SIGTERM, sending SIGKILL", extra={"worker_pid": pid})
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False

        return self._wait_for_exit(pid, self.config.KILL_GRACE_SECONDS)


class WindowsProcessSupervisor(ProcessSupervisor):
    """Supervisor for Windows."""

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    STILL_ACTIVE = 259
    ERROR_ACCESS_DENIED = 5

    def is_pid_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False

        own_child = self._reap(pid)
        if own_child is not None:
            return own_child

        try:
            return self._query_process(pid)
        except (AttributeError, OSError) as e:
            logger.debug("Process query failed, using tasklist", extra={"pid": pid, "error": str(e)})
            return self._tasklist_alive(pid)

    def _query_process(self, pid: int) -> bool:
        import ctypes
        from ctypes import wintypes

        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        handle = kernel32.OpenProcess(self.PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if not handle:
            return ctypes.get_last_error() == self.ERROR_ACCESS_DENIED
        try:
            exit_code = wintypes.DWORD()
            if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
                raise OSError(ctypes.get_last_error(), "GetExitCodeProcess failed")
            return exit_code.value == self.STILL_ACTIVE
        finally:
            kernel32.CloseHandle(handle)

    @staticmethod
    def _tasklist_alive(pid: int) -> bool:
        result = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"],
            capture_output=True,
            text=True,
        )
        return str(pid) in result.stdout

    def _spawn(self, command: List[str]) -> subprocess.Popen:
        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            creationflags=subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS,
        )

    def _terminate(self, pid: int) -> bool:
        try:
            os.kill(pid, signal.CTRL_BREAK_EVENT)
            if self._wait_for_exit(pid, self.config.KILL_GRACE_SECONDS):
                return True
        except OSError:
            pass

        # TerminateProcess
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            return not self.is_pid_alive(pid)

        return self._wait_for_exit(pid, self.config.KILL_GRACE_SECONDS)


def get_process_supervisor(
    config: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None
) -> ProcessSupervisor:
    """Supervisor implementation for the running platform."""
    if os.name == "nt":
        return WindowsProcessSupervisor(config, session_factory)
    return PosixProcessSupervisor(config, session_factory)
