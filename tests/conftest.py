"""Pytest configuration and fixtures."""

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from drip_engine.config.settings import Settings, get_settings  # noqa: E402
from drip_engine.state import ExecutionState  # noqa: E402
from drip_engine.store import CampaignStore  # noqa: E402

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def now():
    """Fixed evaluation time: 2024-01-01 09:00 UTC."""
    return NOW


@pytest.fixture
def state():
    """Fresh active state for recipient r1 in campaign c1."""
    return ExecutionState(recipient_id="r1", campaign_id="c1")


@pytest.fixture
def store(tmp_path):
    """CampaignStore over a temporary SQLite file."""
    store = CampaignStore(f"sqlite:///{tmp_path / 'drip.db'}")
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path):
    """Settings with defaults only (no .env, no YAML lookup side effects)."""
    return Settings(_env_file=None, database_url=f"sqlite:///{tmp_path / 'drip.db'}")


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
