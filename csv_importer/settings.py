"""
Application settings and configuration.
"""
import sys
import tempfile
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./csv_import_jobs.db"
    DATABASE_POOL_PRE_PING: bool = True

    # Worker processes
    LOCK_DIR: str = tempfile.gettempdir()
    MAX_CONCURRENT_WORKERS: int = 5
    SPAWN_RETRY_ATTEMPTS: int = 3
    SPAWN_RETRY_DELAY_SECONDS: float = 1.0
    SPAWN_SETTLE_SECONDS: float = 0.2  # Wait after spawn before checking the child is alive
    LOCK_CLAIM_TIMEOUT_SECONDS: float = 30.0
    LOCK_WAIT_SECONDS: float = 5.0
    KILL_GRACE_SECONDS: float = 5.0
    WORKER_PYTHON: str = sys.executable
    HANDLER_MODULES: List[str] = []

    # File reading
    FILE_OPEN_RETRY_ATTEMPTS: int = 3
    FILE_OPEN_RETRY_DELAY_SECONDS: float = 1.0
    READ_BUFFER_SIZE: int = 8192
    FILE_ENCODING: str = "utf-8-sig"
    ALLOWED_EXTENSIONS: List[str] = [".csv", ".txt", ".tsv"]

    # Processing
    CHUNK_SIZE: int = 1000
    PROGRESS_UPDATE_INTERVAL: int = 250  # Checkpoint every N rows inside a chunk
    CONNECTION_RELEASE_INTERVAL: int = 10  # Recycle the DB connection every N chunks
    CONNECTION_RELEASE_PAUSE_SECONDS: float = 1.0
    MEMORY_LIMIT_BYTES: Optional[int] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    LOG_FILE: Optional[str] = None
    LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_FILE_BACKUP_COUNT: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
