"""
Per-job lock files recording the PID of the worker that owns the job.
"""
import os
import time
from pathlib import Path
from typing import Callable, Iterator, Optional

from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "csv_import_"
LOCK_SUFFIX = ".lock"
LOCK_MODE = 0o600


class LockFile:
    """
    Lock file for one job id.

    An empty lock file is a claim: the supervisor has reserved the job and
    is about to spawn the worker whose PID it will write next.
    """

    def __init__(self, job_id: str, lock_dir: str):
        self.job_id = job_id
        self.path = Path(lock_dir) / f"{LOCK_PREFIX}{job_id}{LOCK_SUFFIX}"

    @classmethod
    def iter_locks(cls, lock_dir: str) -> Iterator["LockFile"]:
        """Yield a LockFile for every lock present in lock_dir."""
        directory = Path(lock_dir)
        if not directory.is_dir():
            return
        for path in directory.glob(f"{LOCK_PREFIX}*{LOCK_SUFFIX}"):
            job_id = path.name[len(LOCK_PREFIX):-len(LOCK_SUFFIX)]
            yield cls(job_id, lock_dir)

    def exists(self) -> bool:
        return self.path.exists()

    def claim(self, pid: Optional[int] = None) -> bool:
        """
        Create the lock file atomically.

        Args:
            pid: PID to record, or None to leave an empty claim

        Returns:
            False if the lock file already exists
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, LOCK_MODE)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as handle:
            if pid is not None:
                handle.write(str(pid))
        return True

    def write_pid(self, pid: int, create: bool = True) -> bool:
        """
        Record a PID in the lock file with owner-only permissions.

        Args:
            pid: Process id to record
            create: Create the file if it is missing

        Returns:
            False if create is off and the file is gone
        """
        flags = os.O_WRONLY | os.O_TRUNC
        if create:
            flags |= os.O_CREAT
            self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, flags, LOCK_MODE)
        except FileNotFoundError:
            return False
        with os.fdopen(fd, "w") as handle:
            handle.write(str(pid))
        os.chmod(self.path, LOCK_MODE)
        return True

    def read_pid(self) -> Optional[int]:
        """Return the recorded PID, or None for a missing, empty or corrupt lock."""
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        if not content.isdigit():
            return None
        return int(content)

    def age(self) -> float:
        """Seconds since the lock file was last written."""
        try:
            return max(0.0, time.time() - self.path.stat().st_mtime)
        except FileNotFoundError:
            return 0.0

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def acquire(
        self,
        pid: int,
        is_alive: Callable[[int], bool],
        wait_seconds: float = 5.0
    ) -> bool:
        """
        Take ownership of the lock for the calling worker.

        The lock is ours when we create it, when the supervisor already wrote
        our PID, or when the recorded PID is dead. An empty claim is waited
        on for up to wait_seconds for the supervisor to fill in a PID and is
        taken over after that.

        Args:
            pid: PID of the calling process
            is_alive: Liveness probe for other PIDs
            wait_seconds: How long to wait on an empty claim

        Returns:
            True if the caller now owns the lock
        """
        deadline = time.monotonic() + wait_seconds

        while True:
            if self.claim(pid):
                return True

            recorded = self.read_pid()
            if recorded == pid:
                return True

            if recorded is None:
                if not self.exists():
                    continue
                if time.monotonic() < deadline:
                    time.sleep(0.05)
                    continue
                logger.warning(
                    "Taking over unfilled lock claim",
                    extra={"job_id": self.job_id, "pid": pid}
                )
                self.write_pid(pid)
                return True

            if is_alive(recorded):
                logger.info(
                    "Lock held by another live worker",
                    extra={"job_id": self.job_id, "owner_pid": recorded, "pid": pid}
                )
                return False

            logger.warning(
                "Replacing stale lock",
                extra={"job_id": self.job_id, "stale_pid": recorded, "pid": pid}
            )
            self.write_pid(pid)
            return True

    def release(self, pid: int) -> None:
        """Remove the lock if it is ours or an empty claim."""
        recorded = self.read_pid()
        if recorded is None or recorded == pid:
            self.remove()
        else:
            logger.warning(
                "Lock owned by another process, leaving it in place",
                extra={"job_id": self.job_id, "owner_pid": recorded, "pid": pid}
            )

    def release_if_held(self, pid: int, wait_seconds: float = 0) -> bool:
        """
        Remove the lock only when it records ``pid``.

        Used by a worker that exits without processing: the supervisor
        already wrote this worker's PID, and nobody else will clear it. An
        empty claim is waited on for up to wait_seconds so a PID the
        supervisor is about to write is not missed.
        """
        deadline = time.monotonic() + wait_seconds
        recorded = self.read_pid()
        while recorded is None and self.exists() and time.monotonic() < deadline:
            time.sleep(0.05)
            recorded = self.read_pid()

        if recorded != pid:
            return False
        self.remove()
        logger.debug("Released lock of skipped job", extra={"job_id": self.job_id, "pid": pid})
        return True
