"""Pytest fixtures for wagate tests: fake connection factory, backoff and supervisor."""

import sys
from pathlib import Path

import pytest
import yaml

# Ensure project root is in path for wagate imports
_project_root = Path(__file__).resolve().parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from fakes import FakeFactory  # noqa: E402
from wagate.engine.backoff import BackoffPolicy  # noqa: E402
from wagate.engine.supervisor import ChannelSupervisor  # noqa: E402


def _project_root() -> Path:
    return Path(__file__).resolve().parent.parent


def pytest_collection_modifyitems(config, items):
    """Live browser tests run only with -m browser."""
    markexpr = config.getoption("markexpr") or ""
    if "browser" in markexpr:
        return
    skip = pytest.mark.skip(reason="live browser test; run with -m browser")
    for item in items:
        if "browser" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def project_root() -> Path:
    return _project_root()


@pytest.fixture
def example_config(project_root: Path) -> dict:
    """Load config.yaml.example."""
    with open(project_root / "config" / "config.yaml.example", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@pytest.fixture
def fake_factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def backoff() -> BackoffPolicy:
    """Large base delay: retries are scheduled but never fire during a test."""
    return BackoffPolicy(base_delay_ms=5000, multiplier=2.0, cap_delay_ms=120000, max_retries=5)


@pytest.fixture
def supervisor(fake_factory: FakeFactory, backoff: BackoffPolicy, tmp_path: Path) -> ChannelSupervisor:
    return ChannelSupervisor(
        fake_factory,
        backoff=backoff,
        session_root=str(tmp_path / "sessions"),
        qr_poll_interval_ms=10,
        status_refresh_timeout_sec=0.2,
    )
