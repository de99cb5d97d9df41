"""memkeep configuration management."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .xdg import get_xdg_config_path, get_xdg_data_path

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_ID = "general"
DEFAULT_CONTEXT_NAME = "General"
DEFAULT_MAX_SESSIONS = 100
FORMAT_VERSION = "1.0"


def _get_default_data_dir() -> Path:
    env_dir = os.environ.get("MEMKEEP_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return get_xdg_data_path()


class Config(BaseModel):
    """memkeep configuration."""

    model_config = ConfigDict(
        extra="allow",
        str_strip_whitespace=True,
    )

    data_dir: Path = Field(default_factory=_get_default_data_dir)
    versions_file: str = "memory_versions.json"
    registry_file: str = "registry.json"
    default_context: str = DEFAULT_CONTEXT_ID
    max_sessions: int = DEFAULT_MAX_SESSIONS
    exported_by: str = "system"
    log_level: str = "WARNING"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / self.registry_file


def get_config_path() -> Path:
    return get_xdg_config_path("config.json")


def load_config(path: Optional[Path] = None) -> Config:
    """Load memkeep configuration from JSON file.

    ``MEMKEEP_DATA_DIR`` overrides ``data_dir`` from the file.

    Args:
        path: Path to config.json file. If None, uses default path

    Returns:
        Config object with loaded settings. Returns default config if the file
        doesn't exist or can't be parsed.
    """
    if path is None:
        path = get_config_path()

    if not path.exists():
        return Config()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if os.environ.get("MEMKEEP_DATA_DIR"):
            data.pop("data_dir", None)

        return Config.model_validate(data)

    except json.JSONDecodeError as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return Config()
    except Exception as e:
        logger.warning("Failed to load config from %s: %s", path, e)
        return Config()


def save_config(config: Config, path: Optional[Path] = None) -> None:
    """Save memkeep configuration to JSON file.

    Args:
        config: Config object to save
        path: Path to config.json file. If None, uses default path

    Raises:
        IOError: If file cannot be written
    """
    if path is None:
        path = get_config_path()

    path.parent.mkdir(parents=True, exist_ok=True)

    config_data = config.model_dump(exclude_none=True, mode="json")

    with open(path, "w", encoding="utf-8") as f:
        json.dump(config_data, f, indent=2)
