"""Tests for temporary resource limit changes."""
import pytest

from csv_importer.services.resource_limits import raised_resource_limits

resource = pytest.importorskip("resource")


def test_limits_restored_after_block():
    before = {
        limit: resource.getrlimit(limit)
        for limit in (resource.RLIMIT_CPU, resource.RLIMIT_AS)
    }

    with raised_resource_limits():
        soft, hard = resource.getrlimit(resource.RLIMIT_CPU)
        assert soft == hard

    for limit, previous in before.items():
        assert resource.getrlimit(limit) == previous


def test_limits_restored_after_error():
    before = resource.getrlimit(resource.RLIMIT_AS)

    with pytest.raises(RuntimeError):
        with raised_resource_limits():
            raise RuntimeError("fatal")

    assert resource.getrlimit(resource.RLIMIT_AS) == before


def test_memory_limit_below_current_soft_limit_is_ignored():
    before = resource.getrlimit(resource.RLIMIT_AS)

    with raised_resource_limits(memory_limit_bytes=1):
        assert resource.getrlimit(resource.RLIMIT_AS) == before

    assert resource.getrlimit(resource.RLIMIT_AS) == before


def test_memory_limit_above_current_soft_limit_is_applied():
    before = resource.getrlimit(resource.RLIMIT_AS)
    if before[1] != resource.RLIM_INFINITY:
        pytest.skip("needs an unlimited hard address-space limit")
    current = 64 * 1024 ** 3
    resource.setrlimit(resource.RLIMIT_AS, (current, before[1]))

    try:
        with raised_resource_limits(memory_limit_bytes=2 * current):
            assert resource.getrlimit(resource.RLIMIT_AS)[0] == 2 * current

        with raised_resource_limits(memory_limit_bytes=current // 2):
            assert resource.getrlimit(resource.RLIMIT_AS)[0] == current

        assert resource.getrlimit(resource.RLIMIT_AS)[0] == current
    finally:
        resource.setrlimit(resource.RLIMIT_AS, before)
