"""
Temporary lifting of per-process CPU-time and address-space ceilings.
"""
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Tuple

try:
    import resource
except ImportError:  # Windows has no rlimits
    resource = None

from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)


def _is_higher(soft: int, current: int) -> bool:
    # RLIM_INFINITY may be -1, so it cannot take part in a plain comparison
    if current == resource.RLIM_INFINITY:
        return False
    return soft == resource.RLIM_INFINITY or soft > current


def _set_soft_limit(limit: int, soft: int) -> Optional[Tuple[int, int]]:
    """
    Raise a soft limit, returning the previous (soft, hard) pair.

    Returns None when the limit was left alone, either because it is
    already at least soft or because the change was refused.
    """
    previous = resource.getrlimit(limit)
    current, hard = previous
    if _is_higher(soft, hard):
        soft = hard
    if not _is_higher(soft, current):
        return None
    try:
        resource.setrlimit(limit, (soft, hard))
    except (ValueError, OSError) as e:
        logger.warning("Could not raise resource limit", extra={"limit": limit, "error": str(e)})
        return None
    return previous


@contextmanager
def raised_resource_limits(memory_limit_bytes: Optional[int] = None) -> Iterator[None]:
    """
    Lift the CPU-time ceiling and raise the memory ceiling for the block.

    The CPU soft limit goes to the hard limit so a large file is not cut off
    by an inherited time limit. The address-space soft limit goes to
    memory_limit_bytes, or the hard limit when not given. A limit is only
    ever raised, never lowered. Previous limits are restored on exit
    whatever happens inside the block.
    """
    if resource is None:
        yield
        return

    saved: Dict[int, Tuple[int, int]] = {}
    targets = {
        resource.RLIMIT_CPU: resource.RLIM_INFINITY,
        resource.RLIMIT_AS: memory_limit_bytes if memory_limit_bytes else resource.RLIM_INFINITY,
    }

    for limit, soft in targets.items():
        previous = _set_soft_limit(limit, soft)
        if previous is not None:
            saved[limit] = previous

    try:
        yield
    finally:
        for limit, previous in saved.items():
            try:
                resource.setrlimit(limit, previous)
            except (ValueError, OSError) as e:
                logger.warning(
                    "Could not restore resource limit",
                    extra={"limit": limit, "error": str(e)}
                )
