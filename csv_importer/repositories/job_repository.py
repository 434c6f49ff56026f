"""
Repository for import job operations.
"""
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from csv_importer.exceptions import InvalidStatusTransition
from csv_importer.models.job import ImportJob, JobStatus
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)

# Allowed source statuses for each target status
_TRANSITIONS = {
    JobStatus.PROCESSING: (JobStatus.PENDING,),
    JobStatus.COMPLETED: (JobStatus.PROCESSING,),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.PROCESSING),
}

COUNTER_FIELDS = (
    "total_processed",
    "total_skip_empty_row",
    "total_success",
    "total_failed",
    "total_inserted",
    "total_updated",
)


class JobRepository:
    """Repository for import job database operations."""

    @staticmethod
    def create(db: Session, job_id: str, **fields: Any) -> ImportJob:
        """
        Create a Pending job record.

        Args:
            db: Database session
            job_id: Opaque job token
            **fields: Remaining column values (filepath, filename, total_data, ...)

        Returns:
            Created job instance
        """
        job = ImportJob(job_id=job_id, status=JobStatus.PENDING.value, **fields)
        db.add(job)
        db.commit()
        db.refresh(job)

        logger.info(
            "Job created",
            extra={
                "job_id": job_id,
                "filename": job.filename,
                "total_data": job.total_data,
            }
        )

        return job

    @staticmethod
    def get_by_id(db: Session, job_id: str) -> Optional[ImportJob]:
        """
        Get job by its job id.

        Args:
            db: Database session
            job_id: Job ID

        Returns:
            Job instance or None
        """
        return db.query(ImportJob).filter(ImportJob.job_id == job_id).first()

    @staticmethod
    def get_by_owner(db: Session, owner_id: int) -> List[ImportJob]:
        """
        Get every job belonging to an owner, newest first.

        Args:
            db: Database session
            owner_id: Owner ID

        Returns:
            List of jobs
        """
        return (
            db.query(ImportJob)
            .filter(ImportJob.owner_id == owner_id)
            .order_by(ImportJob.id.desc())
            .all()
        )

    @staticmethod
    def update(db: Session, job_id: str, **fields: Any) -> ImportJob:
        """
        Apply a partial update and stamp updated_at.

        Args:
            db: Database session
            job_id: Job ID
            **fields: Columns to change

        Returns:
            Updated job instance
        """
        job = JobRepository.get_by_id(db, job_id)
        if not job:
            raise ValueError(f"Job {job_id} not found")

        for key, value in fields.items():
            setattr(job, key, value)
        job.updated_at = datetime.utcnow()

        db.commit()
        db.refresh(job)

        return job

    @staticmethod
    def transition(
        db: Session,
        job_id: str,
        status: JobStatus,
        **fields: Any
    ) -> ImportJob:
        """
        Move a job to a new status, only from an allowed previous status.

        The update is a single conditional UPDATE so two writers can never
        both win the same transition.

        Args:
            db: Database session
            job_id: Job ID
            status: Target status
            **fields: Extra columns written in the same statement

        Returns:
            Updated job instance

        Raises:
            InvalidStatusTransition: If the job is not in an allowed source status
        """
        allowed = [s.value for s in _TRANSITIONS[status]]
        values: Dict[Any, Any] = dict(fields)
        values["status"] = status.value
        values["updated_at"] = datetime.utcnow()

        updated = (
            db.query(ImportJob)
            .filter(ImportJob.job_id == job_id, ImportJob.status.in_(allowed))
            .update(values, synchronize_session=False)
        )
        db.commit()

        if not updated:
            raise InvalidStatusTransition(
                f"Job {job_id} cannot move to {status.label}",
                job_id=job_id,
            )

        job = JobRepository.get_by_id(db, job_id)
        db.refresh(job)

        logger.info(
            "Job status updated",
            extra={"job_id": job_id, "status": status.label}
        )

        return job

    @staticmethod
    def update_progress(db: Session, job_id: str, counters: Dict[str, Any]) -> bool:
        """
        Persist a counter checkpoint.

        A checkpoint that would lower total_processed is refused so pollers
        never see progress go backwards.

        Args:
            db: Database session
            job_id: Job ID
            counters: Counter columns plus error_message

        Returns:
            True if the checkpoint was written
        """
        job = JobRepository.get_by_id(db, job_id)
        if not job:
            raise ValueError(f"Job {job_id} not found")

        processed = counters.get("total_processed", job.total_processed)
        if processed < job.total_processed:
            logger.warning(
                "Refusing checkpoint that lowers processed count",
                extra={
                    "job_id": job_id,
                    "stored_processed": job.total_processed,
                    "checkpoint_processed": processed,
                }
            )
            return False

        for key in COUNTER_FIELDS:
            if key in counters:
                setattr(job, key, counters[key])
        if "error_message" in counters:
            job.error_message = counters["error_message"]
        job.updated_at = datetime.utcnow()

        db.commit()

        logger.debug(
            "Progress checkpoint written",
            extra={"job_id": job_id, "total_processed": processed}
        )

        return True

    @staticmethod
    def finalize(
        db: Session,
        job_id: str,
        status: JobStatus,
        error_message: Any = None,
        counters: Optional[Dict[str, Any]] = None,
        end_time: Optional[datetime] = None
    ) -> ImportJob:
        """
        Move a job to a terminal status with its end time and run time.

        Args:
            db: Database session
            job_id: Job ID
            status: COMPLETED or FAILED
            error_message: Structured errors or a failure message
            counters: Final counter values
            end_time: End timestamp (defaults to now)

        Returns:
            Updated job instance
        """
        end_time = end_time or datetime.utcnow()
        job = JobRepository.get_by_id(db, job_id)
        if not job:
            raise ValueError(f"Job {job_id} not found")

        fields: Dict[str, Any] = {"end_time": end_time}
        if job.start_time is not None:
            fields["run_time"] = max(0, int((end_time - job.start_time).total_seconds()))
        if error_message is not None:
            fields["error_message"] = error_message
        for key in COUNTER_FIELDS:
            if counters and key in counters:
                fields[key] = counters[key]

        return JobRepository.transition(db, job_id, status, **fields)

    @staticmethod
    def exists_in_status(db: Session, job_id: str, statuses: Iterable[JobStatus]) -> bool:
        """
        Check whether a job is currently in one of the given statuses.

        Args:
            db: Database session
            job_id: Job ID
            statuses: Statuses to match

        Returns:
            True if the job exists in one of the statuses
        """
        count = db.query(ImportJob).filter(
            ImportJob.job_id == job_id,
            ImportJob.status.in_([s.value for s in statuses])
        ).count()

        return count > 0
