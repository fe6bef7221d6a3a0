"""Pytest configuration and fixtures for btrsnap tests."""

import logging
from datetime import datetime

import pytest
from hypothesis import settings, Phase

from btrsnap.logger import LOGGER_NAME


# Configure hypothesis profiles; the retention properties are cheap, so the
# default profile runs a reasonable number of examples
settings.register_profile(
    "fast",
    max_examples=25,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=200, deadline=10000)
settings.register_profile("dev", max_examples=10, deadline=10000)

settings.load_profile("fast")


NOW = datetime(2025, 6, 15, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def cleanup_logger():
    """Clean up logger handlers after each test."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
