"""
Remaining-time and percent-complete estimates for polled jobs.
"""
from datetime import datetime
from typing import Dict, Optional

from csv_importer.models.job import ImportJob, JobStatus, TERMINAL_STATUSES

ZERO_ESTIMATE = {"hours": 0, "minutes": 0, "seconds": 0}


def estimate(job: ImportJob, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Estimate the time left for a running job from its observed throughput.

    Args:
        job: Job record
        now: Current time (defaults to utcnow)

    Returns:
        Dict with hours, minutes and seconds, all zero when nothing has been
        processed yet or the job already finished
    """
    if not job.total_processed or job.status in TERMINAL_STATUSES or job.start_time is None:
        return dict(ZERO_ESTIMATE)

    now = now or datetime.utcnow()
    elapsed = (now - job.start_time).total_seconds()
    rate = job.total_processed / elapsed if elapsed > 0 else 0
    remaining_rows = max(0, job.total_data - job.total_processed)
    remaining = remaining_rows / rate if rate > 0 else 0

    remaining = int(remaining)
    return {
        "hours": remaining // 3600,
        "minutes": (remaining % 3600) // 60,
        "seconds": remaining % 60,
    }


def percent_complete(job: ImportJob) -> float:
    """
    Share of total_data already processed, rounded to two decimals.

    An empty file that completed reports 100.
    """
    processed = job.total_processed or 0
    total = job.total_data or 0

    if total <= 0:
        if processed == 0 and job.status != JobStatus.COMPLETED:
            return 0.0
        return 100.0 if processed >= total else 0.0

    if processed == 0:
        return 0.0

    return min(100.0, round(100 * processed / total, 2))
