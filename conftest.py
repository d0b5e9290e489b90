"""
Pytest configuration for the zsotool test suite.

    python -m pytest                      # everything except slow tests
    ZSO_SLOW_TESTS=1 python -m pytest     # include the >2 GiB round trip

Slow tests write a sparse multi-GiB image and decode it back in full;
they need several GiB of free disk space and take minutes.
"""

import os

import pytest

SLOW_ENV = "ZSO_SLOW_TESTS"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: builds and decodes an image larger than 2 GiB "
        f"(skipped unless {SLOW_ENV}=1)")


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config, items):
    if os.environ.get(SLOW_ENV) == "1":
        return
    skip_slow = pytest.mark.skip(reason=f"set {SLOW_ENV}=1 to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
