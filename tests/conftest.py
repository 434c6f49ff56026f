"""Pytest configuration and fixtures."""
import csv
import os
import sys
from typing import Iterable, Sequence

import pytest

from csv_importer.app.db.database import create_session_factory, init_db
from csv_importer.models.job import ImportJob
from csv_importer.repositories.job_repository import JobRepository
from csv_importer.services.handler_registry import HandlerRegistry
from csv_importer.services.row_handler import RowResult
from csv_importer.settings import Settings


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at a per-test database and lock directory, without delays."""
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'jobs.db'}",
        LOCK_DIR=str(tmp_path / "locks"),
        SPAWN_RETRY_DELAY_SECONDS=0,
        SPAWN_SETTLE_SECONDS=0,
        FILE_OPEN_RETRY_DELAY_SECONDS=0,
        CONNECTION_RELEASE_PAUSE_SECONDS=0,
        LOCK_WAIT_SECONDS=0.2,
        KILL_GRACE_SECONDS=5,
        WORKER_PYTHON=sys.executable,
        LOG_FORMAT="text",
    )


@pytest.fixture
def session_factory(test_settings):
    """Create a file-backed SQLite database for testing."""
    factory = create_session_factory(test_settings.DATABASE_URL)
    engine = factory.kw["bind"]
    init_db(engine)

    yield factory

    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def handlers():
    """Fresh registry with an accepting handler registered as 'accept'."""
    registry = HandlerRegistry()

    @registry.handler("accept")
    def accept(row, index, dependencies):
        return RowResult(status_code=200, action="create")

    return registry


@pytest.fixture
def write_csv(tmp_path):
    """Write rows to a CSV file and return its path."""
    def _write(rows: Iterable[Sequence[str]], name: str = "data.csv") -> str:
        path = tmp_path / name
        with open(path, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            for row in rows:
                writer.writerow(row)
        return str(path)
    return _write


@pytest.fixture
def write_text(tmp_path):
    """Write raw text to a file and return its path."""
    def _write(content: str, name: str = "data.csv") -> str:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return str(path)
    return _write


@pytest.fixture
def create_job(session_factory):
    """Insert a Pending job and return its job id."""
    counter = {"n": 0}

    def _create(filepath: str = "/nonexistent.csv", **fields) -> str:
        counter["n"] += 1
        job_id = fields.pop("job_id", f"csv_test{counter['n']}")
        fields.setdefault("filename", os.path.basename(filepath))
        fields.setdefault("callback", "accept")
        fields.setdefault("callback_model", [])
        fields.setdefault("chunk_size", 1000)
        fields.setdefault("skip_header", 1)
        session = session_factory()
        try:
            JobRepository.create(session, job_id, filepath=filepath, **fields)
        finally:
            session.close()
        return job_id

    return _create


@pytest.fixture
def load_job(session_factory):
    """Read a fresh copy of a job."""
    def _load(job_id: str) -> ImportJob:
        session = session_factory()
        try:
            job = JobRepository.get_by_id(session, job_id)
            session.expunge(job)
            return job
        finally:
            session.close()
    return _load
