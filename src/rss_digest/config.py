"""User configuration: which backend to use and where its data lives."""

import json
import logging
import os
from dataclasses import asdict, dataclass

from rss_digest.errors import ConfigError
from rss_digest.storage import BACKENDS, Store, open_store
from rss_digest.storage.files import atomic_write
from rss_digest.storage.sqlite import DB_FILENAME

logger = logging.getLogger(__name__)

APP_NAME = "digest"
CONFIG_FILENAME = "config.json"


@dataclass
class Config:
    backend: str = "markdown"
    data_dir: str = ""

    def get_data_dir(self) -> str:
        """Configured data directory with ``~`` expanded, or the default."""
        if not self.data_dir:
            return default_data_dir()
        return expand_path(self.data_dir)

    def open_store(self) -> Store:
        """Unconnected store for the configured backend."""
        return open_store(self.backend, self.get_data_dir())

    def save(self, path: str | None = None) -> None:
        path = path or get_config_path()
        data = {k: v for k, v in asdict(self).items() if v}
        atomic_write(path, json.dumps(data, indent=2) + "\n")


def get_config_path() -> str:
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(
        os.path.expanduser("~"), ".config"
    )
    return os.path.join(config_home, APP_NAME, CONFIG_FILENAME)


def default_data_dir() -> str:
    data_home = os.environ.get("XDG_DATA_HOME") or os.path.join(
        os.path.expanduser("~"), ".local", "share"
    )
    return os.path.join(data_home, APP_NAME)


def expand_path(path: str) -> str:
    """Expand a leading ``~``; anything else is returned unchanged."""
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    return path


def default_config() -> Config:
    """First-run choice: keep sqlite if a database already exists, else markdown."""
    if os.path.exists(os.path.join(default_data_dir(), DB_FILENAME)):
        return Config(backend="sqlite")
    return Config(backend="markdown")


def load_config(path: str | None = None) -> Config:
    """Read the config file, creating it with defaults on first run.

    Raises:
        ConfigError: the file exists but is unreadable or invalid.
    """
    path = path or get_config_path()
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        config = default_config()
        try:
            config.save(path)
        except OSError as e:
            logger.warning("Could not save default config to %s: %s", path, e)
        return config
    except (OSError, ValueError) as e:
        raise ConfigError(f"read config {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"read config {path}: expected a JSON object")

    config = Config(
        backend=raw.get("backend") or "sqlite",
        data_dir=raw.get("data_dir") or "",
    )
    if config.backend not in BACKENDS:
        raise ConfigError(
            f"unknown backend {config.backend!r}: must be one of {', '.join(BACKENDS)}"
        )
    return config
