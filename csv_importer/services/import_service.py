"""
Submission and status API for background CSV imports.

    service = ImportService()
    job_id = service.submit(
        "/data/products.csv",
        ImportOptions(callback="import_products", owner_id=42, display_id="upload-7"),
    )
    snapshot = service.get_status(job_id)
"""
import csv
import os
import uuid
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from csv_importer.app.db.database import get_session_factory, init_db
from csv_importer.exceptions import FileAccessError, ImportValidationError, WorkerStartError
from csv_importer.models.job import JobStatus
from csv_importer.processor import Processor
from csv_importer.repositories.job_repository import JobRepository
from csv_importer.schemas.job import ImportOptions, JobSnapshot
from csv_importer.services.csv_reader import CSVReader
from csv_importer.services.handler_registry import HandlerRegistry, registry as default_registry
from csv_importer.services.process_supervisor import ProcessSupervisor, get_process_supervisor
from csv_importer.settings import Settings, settings as default_settings
from csv_importer.validators.submission_validator import SubmissionValidator
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)


def generate_job_id() -> str:
    return f"csv_{uuid.uuid4().hex}"


class ImportService:
    """Creates import jobs, launches their workers and reports their status."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None,
        handlers: Optional[HandlerRegistry] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        reader: Optional[CSVReader] = None
    ):
        self.config = config or default_settings
        self.session_factory = session_factory or get_session_factory(self.config)
        init_db(self.session_factory.kw["bind"])
        self.handlers = handlers or default_registry
        self.supervisor = supervisor or get_process_supervisor(self.config, self.session_factory)
        self.reader = reader or CSVReader(self.config)
        self.job_repo = JobRepository
        self.validator = SubmissionValidator

    def submit(self, filepath: str, options: ImportOptions) -> str:
        """
        Create a job and start a background worker for it.

        Args:
            filepath: Path to the delimited file
            options: Handler binding and parsing options

        Returns:
            The new job id

        Raises:
            ImportValidationError: If the file or handler is rejected
            WorkerStartError: If no worker could be started
        """
        job_id = self._create_job(filepath, options)

        if self.supervisor.start(job_id):
            return job_id

        message = f"Could not start worker for job {job_id}"
        if options.fail_on_start_error:
            db = self.session_factory()
            try:
                self.job_repo.finalize(db, job_id, JobStatus.FAILED, error_message=message)
            finally:
                db.close()

        logger.error(
            "Worker start failed",
            extra={"job_id": job_id, "job_marked_failed": options.fail_on_start_error}
        )
        raise WorkerStartError(message, job_id=job_id)

    def submit_now(self, filepath: str, options: ImportOptions) -> str:
        """
        Create a job and process it in the calling process.

        Meant for tests and small files; blocks until the job is terminal.
        """
        job_id = self._create_job(filepath, options)
        processor = Processor(
            session_factory=self.session_factory,
            config=self.config,
            handlers=self.handlers,
            reader=self.reader,
            is_pid_alive=self.supervisor.is_pid_alive,
        )
        processor.run(job_id)
        return job_id

    def start_worker(self, job_id: str) -> bool:
        """Retry launching a worker for a job that is still Pending."""
        db = self.session_factory()
        try:
            if not self.job_repo.exists_in_status(db, job_id, [JobStatus.PENDING]):
                logger.warning("Job is not pending, not starting worker", extra={"job_id": job_id})
                return False
        finally:
            db.close()
        return self.supervisor.start(job_id)

    def get_status(self, job_id: str) -> Optional[JobSnapshot]:
        db = self.session_factory()
        try:
            job = self.job_repo.get_by_id(db, job_id)
            return JobSnapshot.from_job(job) if job else None
        finally:
            db.close()

    def get_status_by_owner(self, owner_id: int) -> List[JobSnapshot]:
        db = self.session_factory()
        try:
            return [JobSnapshot.from_job(job) for job in self.job_repo.get_by_owner(db, owner_id)]
        finally:
            db.close()

    def is_running(self, job_id: str) -> bool:
        return self.supervisor.is_running(job_id)

    def kill(self, job_id: str) -> bool:
        return self.supervisor.kill(job_id)

    def _create_job(self, filepath: str, options: ImportOptions) -> str:
        """Validate the submission, pre-count rows and insert the Pending job."""
        result = self.validator.validate_handler(options.callback, options.callback_model, self.handlers)
        if result.is_valid:
            result = self.validator.validate_file(filepath, self.config.ALLOWED_EXTENSIONS)
        if not result.is_valid:
            logger.warning(
                "Submission rejected",
                extra={"filepath": filepath, "field": result.field, "reason": result.message}
            )
            raise ImportValidationError(result.message, field=result.field)

        try:
            total_data = self.reader.count_records(
                filepath,
                skip_header=options.skip_header,
                delimiter=options.delimiter,
                enclosure=options.enclosure,
                escape=options.escape,
            )
        except (UnicodeDecodeError, csv.Error, FileAccessError) as e:
            logger.warning(
                "Submission rejected",
                extra={"filepath": filepath, "field": "filepath", "reason": str(e)}
            )
            raise ImportValidationError(f"CSV file could not be read: {e}", field="filepath") from e

        job_id = generate_job_id()
        db = self.session_factory()
        try:
            self.job_repo.create(
                db,
                job_id,
                filepath=os.path.abspath(filepath),
                filename=os.path.basename(filepath),
                owner_id=options.owner_id,
                display_id=options.display_id,
                total_data=total_data,
                skip_header=1 if options.skip_header else 0,
                delimiter=options.delimiter,
                enclosure=options.enclosure,
                escape=options.escape,
                chunk_size=options.chunk_size or self.config.CHUNK_SIZE,
                callback=options.callback,
                callback_model=list(options.callback_model),
            )
        finally:
            db.close()

        return job_id
