"""Import request and job status schemas."""
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from csv_importer.models.job import ImportJob, JobStatus
from csv_importer.services import progress


class ImportOptions(BaseModel):
    """Options for a new import job."""

    callback: Optional[str] = Field(None, max_length=255)
    callback_model: List[str] = Field(default_factory=list)
    owner_id: Optional[int] = None
    display_id: Optional[str] = Field(None, max_length=255)
    skip_header: bool = True
    delimiter: str = ","
    enclosure: str = '"'
    escape: Optional[str] = None
    chunk_size: Optional[int] = Field(None, ge=1)
    fail_on_start_error: bool = False

    @field_validator("delimiter", "enclosure")
    @classmethod
    def single_character(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("must be a single character")
        return value

    @field_validator("escape")
    @classmethod
    def optional_single_character(cls, value: Optional[str]) -> Optional[str]:
        if value in (None, ""):
            return None
        if len(value) != 1:
            raise ValueError("must be a single character")
        return value


class EstimatedTime(BaseModel):
    """Remaining time split into whole hours, minutes and seconds."""

    hours: int = 0
    minutes: int = 0
    seconds: int = 0


class ErrorBuckets(BaseModel):
    """Row errors reported by the handler (data) and raised by it (system)."""

    data: List[str] = Field(default_factory=list)
    system: List[str] = Field(default_factory=list)


class JobSnapshot(BaseModel):
    """Read-only view of a job for polling."""

    job_id: str
    filename: Optional[str] = None
    owner_id: Optional[int] = None
    display_id: Optional[str] = None
    status: int
    status_label: str
    total_data: int
    total_processed: int
    total_skip_empty_row: int
    total_success: int
    total_failed: int
    total_inserted: int
    total_updated: int
    error_message: Union[ErrorBuckets, str, None] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    run_time: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    estimate_time: EstimatedTime
    percent_complete: float

    @classmethod
    def from_job(cls, job: ImportJob, now: Optional[datetime] = None) -> "JobSnapshot":
        error_message = job.error_message
        if isinstance(error_message, dict):
            error_message = ErrorBuckets(**error_message)

        return cls(
            job_id=job.job_id,
            filename=job.filename,
            owner_id=job.owner_id,
            display_id=job.display_id,
            status=job.status,
            status_label=JobStatus(job.status).label,
            total_data=job.total_data,
            total_processed=job.total_processed,
            total_skip_empty_row=job.total_skip_empty_row,
            total_success=job.total_success,
            total_failed=job.total_failed,
            total_inserted=job.total_inserted,
            total_updated=job.total_updated,
            error_message=error_message,
            start_time=job.start_time,
            end_time=job.end_time,
            run_time=job.run_time or 0,
            created_at=job.created_at,
            updated_at=job.updated_at,
            estimate_time=EstimatedTime(**progress.estimate(job, now)),
            percent_complete=progress.percent_complete(job),
        )
