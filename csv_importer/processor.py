"""
Import engine for delimited files.
Streams a job's file in chunks through its row handler and checkpoints
progress on the job record.
"""
import gc
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, IO, List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from csv_importer.app.db.database import get_session_factory
from csv_importer.exceptions import HandlerNotFoundError, InvalidStatusTransition
from csv_importer.models.job import ImportJob, JobStatus
from csv_importer.repositories.job_repository import JobRepository
from csv_importer.services.csv_reader import CSVReader
from csv_importer.services.handler_registry import HandlerRegistry, registry as default_registry
from csv_importer.services.lock_file import LockFile
from csv_importer.services.process_supervisor import get_process_supervisor
from csv_importer.services.resource_limits import raised_resource_limits
from csv_importer.services.row_handler import (
    ACTION_CREATE,
    ACTION_UPDATE,
    RowHandlerInvoker,
    RowOutcome,
)
from csv_importer.settings import Settings, settings as default_settings
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)

Chunk = List[Tuple[int, List[str]]]


@dataclass
class ImportCounters:
    """Running totals for one run, snapshotted into the job at checkpoints."""
    processed: int = 0
    skipped_empty: int = 0
    success: int = 0
    failed: int = 0
    inserted: int = 0
    updated: int = 0
    data_errors: List[str] = field(default_factory=list)
    system_errors: List[str] = field(default_factory=list)

    def record(self, outcome: RowOutcome) -> None:
        self.processed += 1
        if outcome.success:
            self.success += 1
            if outcome.action == ACTION_CREATE:
                self.inserted += 1
            elif outcome.action == ACTION_UPDATE:
                self.updated += 1
        else:
            self.failed += 1
            if outcome.data_error:
                self.data_errors.append(outcome.data_error)
            if outcome.system_error:
                self.system_errors.append(outcome.system_error)

    def error_message(self) -> Dict[str, List[str]]:
        return {"data": list(self.data_errors), "system": list(self.system_errors)}

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total_processed": self.processed,
            "total_skip_empty_row": self.skipped_empty,
            "total_success": self.success,
            "total_failed": self.failed,
            "total_inserted": self.inserted,
            "total_updated": self.updated,
            "error_message": self.error_message(),
        }


@dataclass
class JobSource:
    """Parsing configuration copied off the job record before processing."""
    job_id: str
    filepath: str
    callback: Optional[str]
    callback_model: List[str]
    delimiter: str
    enclosure: str
    escape: Optional[str]
    chunk_size: int
    skip_header: bool

    @classmethod
    def from_job(cls, job: ImportJob, default_chunk_size: int) -> "JobSource":
        return cls(
            job_id=job.job_id,
            filepath=job.filepath,
            callback=job.callback,
            callback_model=list(job.callback_model or []),
            delimiter=job.delimiter or ",",
            enclosure=job.enclosure or '"',
            escape=job.escape or None,
            chunk_size=job.chunk_size or default_chunk_size,
            skip_header=bool(job.skip_header),
        )


class Processor:
    """Processor for delimited-file import jobs."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        config: Optional[Settings] = None,
        handlers: Optional[HandlerRegistry] = None,
        reader: Optional[CSVReader] = None,
        is_pid_alive: Optional[Callable[[int], bool]] = None
    ):
        """
        Initialize processor.

        Args:
            session_factory: Factory for database sessions
            config: Settings with chunking, checkpoint and lock options
            handlers: Registry resolving the job's handler and dependencies
            reader: File reader
            is_pid_alive: Liveness probe used when another PID holds the lock
        """
        self.config = config or default_settings
        self.session_factory = session_factory or get_session_factory(self.config)
        self.handlers = handlers or default_registry
        self.reader = reader or CSVReader(self.config)
        self.job_repo = JobRepository
        if is_pid_alive is None:
            is_pid_alive = get_process_supervisor(self.config, self.session_factory).is_pid_alive
        self.is_pid_alive = is_pid_alive
        self.db: Optional[Session] = None

    def run(self, job_id: str) -> bool:
        """
        Process a Pending job to a terminal status.

        Calling this for a job that is missing, not Pending, or locked by
        another live worker does nothing.

        Args:
            job_id: Job ID

        Returns:
            True if this call moved the job to a terminal status
        """
        pid = os.getpid()
        self.db = self.session_factory()
        lock = LockFile(job_id, self.config.LOCK_DIR)

        try:
            job = self.job_repo.get_by_id(self.db, job_id)
            if not job:
                logger.warning("Job not found - skipping processing", extra={"job_id": job_id})
                lock.release_if_held(pid, self.config.LOCK_WAIT_SECONDS)
                return False

            if job.status != JobStatus.PENDING:
                logger.info(
                    "Job is not pending - skipping processing",
                    extra={"job_id": job_id, "status": job.status}
                )
                lock.release_if_held(pid, self.config.LOCK_WAIT_SECONDS)
                return False

            source = JobSource.from_job(job, self.config.CHUNK_SIZE)
            if not lock.acquire(pid, self.is_pid_alive, self.config.LOCK_WAIT_SECONDS):
                return False

            try:
                with raised_resource_limits(self.config.MEMORY_LIMIT_BYTES):
                    return self._process(source)
            finally:
                lock.release(pid)

        finally:
            self.db.close()
            self.db = None
            gc.collect()

    def _process(self, source: JobSource) -> bool:
        job_id = source.job_id
        logger.info(
            "Starting job processing",
            extra={"job_id": job_id, "filepath": source.filepath, "chunk_size": source.chunk_size}
        )

        try:
            if not source.callback:
                raise HandlerNotFoundError("Row handler is not set")
            invoker = RowHandlerInvoker(source.callback, source.callback_model, self.handlers)
            handle = self.reader.open(source.filepath)
        except Exception as e:
            logger.error(
                "Job cannot start",
                extra={"job_id": job_id, "error": str(e)}
            )
            return self._fail(job_id, str(e))

        try:
            self.job_repo.transition(
                self.db,
                job_id,
                JobStatus.PROCESSING,
                start_time=datetime.utcnow()
            )
        except InvalidStatusTransition:
            handle.close()
            logger.info("Job was claimed by another worker", extra={"job_id": job_id})
            return False

        try:
            with handle:
                counters = self._stream(source, handle, invoker)

            self.job_repo.finalize(
                self.db,
                job_id,
                JobStatus.COMPLETED,
                error_message=counters.error_message(),
                counters=counters.snapshot()
            )

            logger.info(
                "Job processing complete",
                extra={
                    "job_id": job_id,
                    "total_processed": counters.processed,
                    "total_success": counters.success,
                    "total_failed": counters.failed,
                    "total_skip_empty_row": counters.skipped_empty
                }
            )
            return True

        except Exception as e:
            logger.error(
                "Error in job processing",
                extra={"job_id": job_id, "error": str(e)},
                exc_info=True
            )
            return self._fail(job_id, str(e))

    def _stream(self, source: JobSource, handle: IO[str], invoker: RowHandlerInvoker) -> ImportCounters:
        """Read records, buffer content rows into chunks and process each chunk."""
        counters = ImportCounters()
        records = self.reader.configure(handle, source.delimiter, source.enclosure, source.escape)

        if source.skip_header:
            self.reader.next_record(records)

        chunk: Chunk = []
        row_index = 0
        chunk_number = 0

        for row in records:
            if not self.reader.has_content(row):
                counters.skipped_empty += 1
                continue

            row_index += 1
            chunk.append((row_index, row))

            if len(chunk) >= source.chunk_size:
                chunk_number += 1
                self._process_chunk(source, chunk, chunk_number, invoker, counters)
                chunk = []

        if chunk:
            chunk_number += 1
            self._process_chunk(source, chunk, chunk_number, invoker, counters)
        else:
            # Flush trailing blank rows, or an empty file's zero counters
            self._checkpoint(source.job_id, counters)

        return counters

    def _process_chunk(
        self,
        source: JobSource,
        chunk: Chunk,
        chunk_number: int,
        invoker: RowHandlerInvoker,
        counters: ImportCounters
    ) -> None:
        refresh_interval = self.config.PROGRESS_UPDATE_INTERVAL
        row_checkpoints = refresh_interval > 0 and refresh_interval != source.chunk_size

        dependencies = invoker.load_dependencies()

        for row_index, row in chunk:
            outcome = invoker.invoke(row, row_index, dependencies)
            counters.record(outcome)

            if row_checkpoints and counters.processed % refresh_interval == 0:
                self._checkpoint(source.job_id, counters)

        self._checkpoint(source.job_id, counters)

        logger.info(
            "Chunk processed",
            extra={
                "job_id": source.job_id,
                "chunk_number": chunk_number,
                "chunk_rows": len(chunk),
                "total_processed": counters.processed
            }
        )

        release_interval = self.config.CONNECTION_RELEASE_INTERVAL
        if release_interval > 0 and chunk_number % release_interval == 0:
            self._recycle_connection(source.job_id)

    def _checkpoint(self, job_id: str, counters: ImportCounters) -> None:
        self.job_repo.update_progress(self.db, job_id, counters.snapshot())

    def _recycle_connection(self, job_id: str) -> None:
        """Give the database connection back and open a fresh one."""
        bind = self.db.get_bind()
        self.db.close()
        bind.dispose()

        pause = self.config.CONNECTION_RELEASE_PAUSE_SECONDS
        if pause > 0:
            time.sleep(pause)

        self.db = self.session_factory()
        logger.debug("Database connection recycled", extra={"job_id": job_id})

    def _fail(self, job_id: str, message: str) -> bool:
        """Record a job-fatal error; returns whether the job was marked Failed."""
        try:
            self.db.rollback()
            self.job_repo.finalize(self.db, job_id, JobStatus.FAILED, error_message=message)
            return True
        except InvalidStatusTransition:
            logger.warning(
                "Job already left processing, failure not recorded",
                extra={"job_id": job_id, "error": message}
            )
            return False
