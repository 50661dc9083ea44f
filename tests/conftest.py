"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for vcd_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from vcd_provisioner.config import Config  # noqa: E402


@pytest.fixture
def fast_config() -> Config:
    """Configuration with no backoff and near-instant task polling."""
    return Config(
        operation_timeout_seconds=10,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        task_poll_interval_seconds=0.001,
    )
