"""
Configuration loader — reads deken.yml into a DekenConfig.

Everything has a default, so a missing file is not an error: the
package manager runs against the public deken registry and installs
into the user's plugdata library folder.  A file that exists but is
unreadable, not YAML, or fails validation raises ConfigError.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "deken.yml"

DEFAULT_SEARCH_URL = "https://deken.puredata.info/search.json"
DEFAULT_INFO_URL = "https://deken.puredata.info/info.json"


def default_library_dir() -> Path:
    """Where packages are extracted when nothing else is configured."""
    return Path.home() / "plugdata" / "Library" / "Deken"


class ConfigError(Exception):
    """Raised when deken configuration is invalid."""


class DekenConfig(BaseModel):
    """Validated package manager settings."""

    search_url: str = DEFAULT_SEARCH_URL
    info_url: str = DEFAULT_INFO_URL
    library_dir: Path = Field(default_factory=default_library_dir)

    # Network
    connect_timeout: float = 5.0
    chunk_size: int = 8192
    force_https: bool = True

    # Platform; None means "detect from the running interpreter"
    float_size: int = 32
    os_name: str | None = None
    arch_aliases: list[str] | None = None

    # Search
    case_sensitive_search: bool = True

    @field_validator("library_dir", mode="before")
    @classmethod
    def _expand_library_dir(cls, value: object) -> object:
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    @field_validator("connect_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("connect_timeout must be positive")
        return value

    @field_validator("chunk_size")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("chunk_size must be positive")
        return value

    @property
    def state_file(self) -> Path:
        """Path of the persisted install-state document."""
        return self.library_dir / ".pkg_info.json"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for deken.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to deken.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(path: Path | None = None) -> DekenConfig:
    """Load and validate package manager configuration.

    Args:
        path: Explicit path to deken.yml. If None, searches upward and
            falls back to defaults when nothing is found.

    Returns:
        Validated DekenConfig. ``DEKEN_LIBRARY_DIR`` overrides
        ``library_dir`` from any source.

    Raises:
        ConfigError: If an explicit file is missing, or any file is invalid.
    """
    explicit = path is not None
    if path is None:
        path = find_config_file()

    data: dict = {}
    if path is None:
        logger.debug("No %s found — using defaults", CONFIG_FILE)
    elif not path.is_file():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
    else:
        logger.debug("Loading deken config from %s", path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

        try:
            loaded = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Expected a YAML mapping in {path}, got {type(loaded).__name__}")

        # The YAML may wrap everything under a "deken" key or be flat
        data = loaded.get("deken", loaded) or {}

    env_dir = os.environ.get("DEKEN_LIBRARY_DIR")
    if env_dir:
        data = {**data, "library_dir": env_dir}

    try:
        config = DekenConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid deken configuration: {e}") from e

    logger.info("Library directory: %s", config.library_dir)
    return config
