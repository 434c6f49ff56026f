"""
SQLAlchemy model for the csv_process_jobs table.
"""
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
import enum

from csv_importer.app.db.database import Base


class JobStatus(int, enum.Enum):
    """Job status enumeration, persisted as its integer value."""
    PENDING = 1
    PROCESSING = 2
    COMPLETED = 3
    FAILED = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ImportJob(Base):
    """Import job model representing the csv_process_jobs table."""

    __tablename__ = "csv_process_jobs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(100), nullable=False, unique=True, index=True)
    filepath = Column(String(1024), nullable=True)
    filename = Column(String(255), nullable=True)
    owner_id = Column(BigInteger, nullable=True, index=True)

    # Parsing configuration
    delimiter = Column(String(1), nullable=False, default=",")
    enclosure = Column(String(1), nullable=False, default='"')
    escape = Column(String(1), nullable=True)
    chunk_size = Column(Integer, nullable=False, default=1000)
    skip_header = Column(Integer, nullable=False, default=1)  # 1 - Yes, 0 - No

    # Counters
    total_data = Column(Integer, nullable=False, default=0)
    total_processed = Column(Integer, nullable=False, default=0)
    total_skip_empty_row = Column(Integer, nullable=False, default=0)
    total_success = Column(Integer, nullable=False, default=0)
    total_failed = Column(Integer, nullable=False, default=0)
    total_inserted = Column(Integer, nullable=False, default=0)
    total_updated = Column(Integer, nullable=False, default=0)

    # Handler binding
    callback = Column(String(255), nullable=True)
    callback_model = Column(JSON, nullable=True)

    error_message = Column(JSON, nullable=True)
    display_id = Column(String(255), nullable=True)

    status = Column(Integer, nullable=False, default=JobStatus.PENDING.value, index=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    run_time = Column(Integer, nullable=False, default=0)  # seconds
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, nullable=True)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def __repr__(self):
        return f"<ImportJob(job_id={self.job_id}, status={self.status}, owner_id={self.owner_id})>"
