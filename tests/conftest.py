"""Pytest configuration and fixtures for the promquery tests."""

import pytest
from whenever import Instant

from tests.fakes import FakeMetricsClient


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    # The poller is built on asyncio task groups and timeouts
    return "asyncio"


@pytest.fixture
def fake_client() -> FakeMetricsClient:
    return FakeMetricsClient()


@pytest.fixture
def now() -> Instant:
    return Instant.from_utc(2024, 6, 1, 12, 0, 0)
