"""Configuration for credential synchronization.

Settings live in the ``[credential_sync]`` table of ``~/.ctask/config.toml``
and can be overridden per process through ``CREDSYNC_*`` environment
variables. Other tables in the file belong to the rest of the launcher and are
preserved untouched when the file is saved.

Security:
- Config file permissions: 0600 (owner read/write only)
- Atomic writes using temporary file

Example:
    >>> config = get_sync_config()
    >>> config.metadata_dir
    PosixPath('/home/user/.ctask/home/.credential_metadata')
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

from credsync.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_TABLE = "credential_sync"
METADATA_DIRNAME = ".credential_metadata"

DEFAULT_BASE_DIR = Path.home() / ".ctask" / "home"
DEFAULT_VALIDITY_WINDOW = 300.0
DEFAULT_ACQUIRE_WAIT_BUDGET = 60.0
DEFAULT_STALE_LOCK_MAX_AGE = 120.0
DEFAULT_RETRY_INTERVAL = 0.25

# Environment variable -> SyncConfig field
ENV_OVERRIDES = {
    "CREDSYNC_BASE_DIR": "base_dir",
    "CREDSYNC_VALIDITY_WINDOW": "validity_window",
    "CREDSYNC_ACQUIRE_WAIT_BUDGET": "acquire_wait_budget",
    "CREDSYNC_STALE_LOCK_MAX_AGE": "stale_lock_max_age",
    "CREDSYNC_RETRY_INTERVAL": "retry_interval",
    "CREDSYNC_HOLDER_ID": "holder_id",
}

_DURATION_FIELDS = (
    "validity_window",
    "acquire_wait_budget",
    "stale_lock_max_age",
    "retry_interval",
)


def default_holder_id() -> str:
    """Identity written into lock and metadata records: ``<hostname>:<pid>``."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class SyncConfig:
    """Credential sync settings.

    Durations are in seconds.
    """

    base_dir: Path = DEFAULT_BASE_DIR
    validity_window: float = DEFAULT_VALIDITY_WINDOW
    acquire_wait_budget: float = DEFAULT_ACQUIRE_WAIT_BUDGET
    stale_lock_max_age: float = DEFAULT_STALE_LOCK_MAX_AGE
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    holder_id: str = field(default_factory=default_holder_id)

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).expanduser()
        for name in _DURATION_FIELDS:
            value = getattr(self, name)
            try:
                value = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{name} must be a number, got {value!r}") from e
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
            setattr(self, name, value)
        if not self.holder_id:
            self.holder_id = default_holder_id()

    @property
    def metadata_dir(self) -> Path:
        """Directory holding the metadata record and the lock."""
        return self.base_dir / METADATA_DIRNAME

    def to_dict(self) -> dict[str, Any]:
        """Convert to a TOML-friendly dictionary.

        holder_id is per process and is not persisted.
        """
        return {
            "base_dir": str(self.base_dir),
            "validity_window": self.validity_window,
            "acquire_wait_budget": self.acquire_wait_budget,
            "stale_lock_max_age": self.stale_lock_max_age,
            "retry_interval": self.retry_interval,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncConfig":
        """Create from dictionary, ignoring unknown keys."""
        return cls(
            base_dir=Path(data.get("base_dir", DEFAULT_BASE_DIR)),
            validity_window=data.get("validity_window", DEFAULT_VALIDITY_WINDOW),
            acquire_wait_budget=data.get("acquire_wait_budget", DEFAULT_ACQUIRE_WAIT_BUDGET),
            stale_lock_max_age=data.get("stale_lock_max_age", DEFAULT_STALE_LOCK_MAX_AGE),
            retry_interval=data.get("retry_interval", DEFAULT_RETRY_INTERVAL),
            holder_id=data.get("holder_id") or default_holder_id(),
        )

    def with_environment(self) -> "SyncConfig":
        """Return a copy with ``CREDSYNC_*`` environment overrides applied.

        Raises:
            ConfigError: If an override has an invalid value
        """
        data = self.to_dict()
        data["holder_id"] = self.holder_id
        for env_name, field_name in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                logger.debug(f"Config override from {env_name}")
                data[field_name] = value
        return SyncConfig.from_dict(data)


class ConfigManager:
    """Read and write the ``[credential_sync]`` table of the launcher config."""

    DEFAULT_CONFIG_DIR = Path.home() / ".ctask"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def get_config_path(cls, custom_path: str | Path | None = None) -> Path:
        """Get configuration file path."""
        if custom_path:
            return Path(custom_path).expanduser()
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def load_config(cls, custom_path: str | Path | None = None) -> SyncConfig:
        """Load sync settings from the config file (defaults if absent).

        Raises:
            ConfigError: If the file exists but cannot be parsed
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return SyncConfig()

        try:
            with open(config_path, "rb") as f:
                data = tomli.load(f)  # type: ignore[attr-defined]
        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

        table = data.get(CONFIG_TABLE, {})
        if not isinstance(table, dict):
            raise ConfigError(f"[{CONFIG_TABLE}] in {config_path} must be a table")

        logger.debug(f"Loaded config from: {config_path}")
        return SyncConfig.from_dict(table)

    @classmethod
    def has_sync_table(cls, custom_path: str | Path | None = None) -> bool:
        """Check whether the config file already has a [credential_sync] table."""
        config_path = cls.get_config_path(custom_path)
        if not config_path.exists():
            return False
        try:
            with open(config_path, "rb") as f:
                return CONFIG_TABLE in tomli.load(f)  # type: ignore[attr-defined]
        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def save_config(cls, config: SyncConfig, custom_path: str | Path | None = None) -> Path:
        """Write sync settings, preserving the rest of the file.

        Returns:
            Path the config was written to

        Raises:
            ConfigError: If saving fails
        """
        config_path = cls.get_config_path(custom_path)
        temp_path = config_path.with_suffix(".tmp")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            table = tomlkit.table()
            for key, value in config.to_dict().items():
                table[key] = value
            doc[CONFIG_TABLE] = table

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except Exception as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e


# Process-wide default (lazily loaded)
_config: SyncConfig | None = None


def get_sync_config(custom_path: str | Path | None = None) -> SyncConfig:
    """Get the default sync configuration: config file plus environment.

    A custom path always reloads and replaces the cached default.
    """
    global _config
    if _config is None or custom_path is not None:
        _config = ConfigManager.load_config(custom_path).with_environment()
    return _config


def reset_sync_config() -> None:
    """Forget the cached configuration; the next access reloads it."""
    global _config
    _config = None


__all__ = [
    "ConfigManager",
    "SyncConfig",
    "default_holder_id",
    "get_sync_config",
    "reset_sync_config",
]
