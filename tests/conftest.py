"""
Shared test fixtures for credsync tests.

This module provides common fixtures used across all test types:
- Isolated sync configuration rooted in tmp_path
- Counting extractors
- Protection of the real ~/.ctask from test runs
"""

import pytest

from credsync.config import ENV_OVERRIDES, ConfigManager, SyncConfig, reset_sync_config
from credsync.lock_manager import LockManager
from credsync.metadata_store import MetadataStore

# ============================================================================
# ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from ~/.ctask and from the caller's CREDSYNC_* settings.

    Tests should NEVER read or modify the real launcher config.
    """
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", tmp_path / "default-config.toml")
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    reset_sync_config()
    yield
    reset_sync_config()


# ============================================================================
# CONFIG FIXTURES
# ============================================================================


@pytest.fixture
def base_dir(tmp_path):
    """Launcher base directory for one test."""
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def sync_config(base_dir):
    """Fast settings: short wait budget and retry interval."""
    return SyncConfig(
        base_dir=base_dir,
        validity_window=300,
        acquire_wait_budget=2.0,
        stale_lock_max_age=120,
        retry_interval=0.05,
        holder_id="test-host:1",
    )


@pytest.fixture
def store(sync_config):
    return MetadataStore(sync_config.metadata_dir)


@pytest.fixture
def locks(sync_config):
    return LockManager(
        sync_config.metadata_dir,
        holder_id=sync_config.holder_id,
        stale_max_age=sync_config.stale_lock_max_age,
    )


# ============================================================================
# EXTRACTOR FIXTURES
# ============================================================================


class CountingExtractor:
    """Extractor returning a fixed secret and counting its calls."""

    def __init__(self, secret="secret-v1"):
        self.secret = secret
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.secret


@pytest.fixture
def extractor():
    return CountingExtractor()
