"""
Custom exceptions for the CSV importer.
"""
from typing import Optional


class CSVImporterError(Exception):
    """Base exception for all importer errors"""
    pass


class ImportValidationError(CSVImporterError):
    """Submission input was rejected before any job was created"""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class FileAccessError(CSVImporterError):
    """Source file could not be opened after all retries"""
    def __init__(self, message: str, filepath: Optional[str] = None):
        super().__init__(message)
        self.filepath = filepath


class HandlerNotFoundError(CSVImporterError):
    """A row handler or dependency name could not be resolved"""
    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class WorkerStartError(CSVImporterError):
    """The supervisor refused or failed to start a worker"""
    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class InvalidStatusTransition(CSVImporterError):
    """A conditional status update matched no job in the expected state"""
    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
