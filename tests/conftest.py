"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for org_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from org_mock import MockOrganization, create_mock_collaborators  # noqa: E402

from orchestrator.collaborators import Collaborators  # noqa: E402
from orchestrator.config import Config, RetryPolicy  # noqa: E402
from orchestrator.events import EventLog  # noqa: E402
from orchestrator.store import RequestStore  # noqa: E402

# Retries without waiting, so retry paths run instantly
FAST_RETRY = RetryPolicy(
    base_seconds=0.0,
    max_delay_seconds=0.0,
    max_total_seconds=60.0,
    max_attempts=5,
    jitter_ratio=0.0,
)


@pytest.fixture
def requests_dir(tmp_path: Path) -> Path:
    path = tmp_path / "requests"
    path.mkdir()
    return path


@pytest.fixture
def config(requests_dir: Path) -> Config:
    return Config(requests_dir=requests_dir, retry=FAST_RETRY, external_call_timeout_seconds=5)


@pytest.fixture
def store() -> RequestStore:
    return RequestStore()


@pytest.fixture
def events() -> EventLog:
    return EventLog()


@pytest.fixture
def org() -> MockOrganization:
    return MockOrganization()


@pytest.fixture
def collaborators(org: MockOrganization) -> Collaborators:
    return create_mock_collaborators(org)
