"""Global test fixtures and setup"""

import logging

import pytest


@pytest.fixture(autouse=True)
def quiet_logging():
    """Retry warnings are expected in many tests, keep them out of the way"""
    logger = logging.getLogger()
    old_level = logger.level
    logger.setLevel(logging.ERROR)
    yield
    logger.setLevel(old_level)
