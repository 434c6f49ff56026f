"""
Worker process entry point for a single import job.

    python -m csv_importer.worker <job_id>
"""
import argparse
import os
import signal
import sys
from typing import List, Optional

from csv_importer.settings import settings
from csv_importer.app.db.database import get_session_factory, init_db
from csv_importer.app.logging_config import get_logger, setup_logging
from csv_importer.processor import Processor
from csv_importer.repositories.job_repository import JobRepository
from csv_importer.services.handler_registry import load_handler_modules
from csv_importer.services.lock_file import LockFile

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1


def _raise_system_exit(signum, frame):
    # Unwinds through Processor.run so the lock file is released
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    signal.signal(signal.SIGTERM, _raise_system_exit)


def run_job(job_id: str) -> int:
    """
    Bootstrap the worker and process one job.

    Args:
        job_id: Job ID

    Returns:
        Process exit code
    """
    try:
        load_handler_modules(settings.HANDLER_MODULES)
        session_factory = get_session_factory(settings)
        init_db(session_factory.kw["bind"])

        db = session_factory()
        try:
            job = JobRepository.get_by_id(db, job_id)
        finally:
            db.close()
    except Exception as e:
        logger.error(
            "Worker bootstrap failed",
            extra={"job_id": job_id, "error": str(e)},
            exc_info=True
        )
        return EXIT_ERROR

    if job is None:
        logger.error("Job not found", extra={"job_id": job_id})
        LockFile(job_id, settings.LOCK_DIR).release_if_held(os.getpid(), settings.LOCK_WAIT_SECONDS)
        return EXIT_ERROR

    processor = Processor(session_factory=session_factory, config=settings)
    processor.run(job_id)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="Process one CSV import job.")
    parser.add_argument("job_id", help="ID of a Pending import job")
    args = parser.parse_args(argv)

    setup_logging()
    install_signal_handlers()

    logger.info("Starting import worker", extra={"job_id": args.job_id})
    return run_job(args.job_id)


if __name__ == "__main__":
    sys.exit(main())
