"""Shared fixtures."""

from collections.abc import Generator

import pytest
from aioresponses import aioresponses as aioresponses_cls


@pytest.fixture
def aioresponses() -> Generator[aioresponses_cls]:
    """Mock every aiohttp request made during the test."""
    with aioresponses_cls() as mock:
        yield mock
