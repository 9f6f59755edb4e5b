"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for baas_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from baas_mock import FakeClock, MockControlPlane, RecordingRetry  # noqa: E402
from baas_operator.config import Config  # noqa: E402


@pytest.fixture
def plane() -> MockControlPlane:
    """Fresh in-memory control plane."""
    return MockControlPlane()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry(clock: FakeClock) -> RecordingRetry:
    """Retry with default backoff that never actually sleeps."""
    return RecordingRetry(clock=clock)


@pytest.fixture
def config() -> Config:
    """Valid configuration pointing at a test endpoint."""
    return Config(
        api_url="https://console.example.test/api/v1",
        api_key="test-api-key",
        create_timeout_seconds=30,
        update_timeout_seconds=30,
        delete_timeout_seconds=30,
        request_timeout_seconds=5,
    )
