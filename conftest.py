"""Pytest configuration for depthtrack.

Full-resolution tracking runs over many synthetic frames are marked `slow`
and only run with `pytest --slow`.
"""
import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--slow", action="store_true", default=False,
        help="also run the full-resolution multi-frame tracking scenarios",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: full-resolution tracking over many frames, enabled with --slow"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--slow"):
        return
    deferred = pytest.mark.skip(reason="full-resolution tracking run; enable with --slow")
    for item in items:
        if item.get_closest_marker("slow") is not None:
            item.add_marker(deferred)
