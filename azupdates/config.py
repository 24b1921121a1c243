"""
Configuration management for the update mirror.

The configuration is stored as a TOML file in the store directory. It names
the feed endpoint and its client settings, plus the sync policy (retention
floor, staleness threshold, startup sync). Environment variables override
file values at load time and are never written back.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

import tomli_w

from .feed_client import (
    DEFAULT_ENDPOINT,
    DEFAULT_PAGE_SIZE,
    DEFAULT_TIMEOUT,
    MAX_RETRIES,
)
from .types import parse_retention_date


CONFIG_FILENAME = "azupdates.toml"
DATABASE_FILENAME = "azure-updates.db"
CONFIG_VERSION = 1

DEFAULT_STALENESS_HOURS = 24.0

STORE_PATH_ENV = "AZURE_UPDATES_STORE_PATH"


@dataclass
class FeedConfig:
    """Where and how to fetch the remote feed."""
    endpoint: str = DEFAULT_ENDPOINT
    page_size: int = DEFAULT_PAGE_SIZE
    max_retries: int = MAX_RETRIES
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class SyncConfig:
    """When to sync and what to keep."""
    retention_start_date: Optional[str] = None
    staleness_hours: float = DEFAULT_STALENESS_HOURS
    sync_on_startup: bool = True


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    feed: FeedConfig = field(default_factory=FeedConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite database."""
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory from AZURE_UPDATES_STORE_PATH, else ~/.azupdates."""
    env_path = os.environ.get(STORE_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".azupdates"


def _parse_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be true or false (got {value!r})")


def _parse_positive(name: str, value, kind=float):
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number (got {value!r})") from None
    if number <= 0:
        raise ValueError(f"{name} must be positive (got {value!r})")
    return number


def validate_config(config: StoreConfig) -> None:
    """
    Check value ranges and formats.

    Raises:
        ValueError: On the first invalid value
    """
    if not config.feed.endpoint.startswith(("http://", "https://")):
        raise ValueError(f"feed.endpoint must be an http(s) URL (got {config.feed.endpoint!r})")
    _parse_positive("feed.page_size", config.feed.page_size, int)
    _parse_positive("feed.max_retries", config.feed.max_retries, int)
    _parse_positive("feed.timeout", config.feed.timeout)
    _parse_positive("sync.staleness_hours", config.sync.staleness_hours)
    if config.sync.retention_start_date:
        parse_retention_date(config.sync.retention_start_date)


def apply_env_overrides(config: StoreConfig, env: Optional[Mapping[str, str]] = None) -> StoreConfig:
    """
    Overlay environment variables on a loaded config.

    AZURE_UPDATES_API_ENDPOINT, DATA_RETENTION_START_DATE,
    SYNC_STALENESS_HOURS and SYNC_ON_STARTUP take precedence over the file.

    Raises:
        ValueError: If an override is malformed
    """
    env = os.environ if env is None else env

    if env.get("AZURE_UPDATES_API_ENDPOINT"):
        config.feed.endpoint = env["AZURE_UPDATES_API_ENDPOINT"]
    if env.get("DATA_RETENTION_START_DATE"):
        config.sync.retention_start_date = env["DATA_RETENTION_START_DATE"].strip()
    if env.get("SYNC_STALENESS_HOURS"):
        config.sync.staleness_hours = _parse_positive(
            "SYNC_STALENESS_HOURS", env["SYNC_STALENESS_HOURS"]
        )
    if env.get("SYNC_ON_STARTUP"):
        config.sync.sync_on_startup = _parse_bool("SYNC_ON_STARTUP", env["SYNC_ON_STARTUP"])

    validate_config(config)
    return config


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    feed = data.get("feed", {})
    sync = data.get("sync", {})
    config = StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        feed=FeedConfig(
            endpoint=feed.get("endpoint", DEFAULT_ENDPOINT),
            page_size=_parse_positive("feed.page_size", feed.get("page_size", DEFAULT_PAGE_SIZE), int),
            max_retries=_parse_positive("feed.max_retries", feed.get("max_retries", MAX_RETRIES), int),
            timeout=_parse_positive("feed.timeout", feed.get("timeout", DEFAULT_TIMEOUT)),
        ),
        sync=SyncConfig(
            retention_start_date=sync.get("retention_start_date") or None,
            staleness_hours=_parse_positive(
                "sync.staleness_hours", sync.get("staleness_hours", DEFAULT_STALENESS_HOURS)
            ),
            sync_on_startup=_parse_bool("sync.sync_on_startup", sync.get("sync_on_startup", True)),
        ),
    )
    validate_config(config)
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    sync: dict = {
        "staleness_hours": config.sync.staleness_hours,
        "sync_on_startup": config.sync.sync_on_startup,
    }
    # TOML has no null
    if config.sync.retention_start_date:
        sync["retention_start_date"] = config.sync.retention_start_date

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "feed": {
            "endpoint": config.feed.endpoint,
            "page_size": config.feed.page_size,
            "max_retries": config.feed.max_retries,
            "timeout": config.feed.timeout,
        },
        "sync": sync,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path, env: Optional[Mapping[str, str]] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults, then apply
    environment overrides.

    This is the main entry point for config management.
    """
    if (store_path / CONFIG_FILENAME).exists():
        config = load_config(store_path)
    else:
        config = StoreConfig(path=store_path)
        save_config(config)
    return apply_env_overrides(config, env)
