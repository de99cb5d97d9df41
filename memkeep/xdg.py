"""XDG Base Directory helpers for memkeep config and data files."""

import os
from pathlib import Path


def get_xdg_config_path(filename: str) -> Path:
    """Get XDG-compliant config file path.

    Checks locations in order of precedence:
    1. $XDG_CONFIG_HOME/memkeep/{filename} (if XDG_CONFIG_HOME is set)
    2. ~/.config/memkeep/{filename} (XDG default)

    Returns the first existing file, or the preferred location for new files.

    Args:
        filename: Name of the config file (e.g., "config.json")

    Returns:
        Path to config file
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        xdg_path = Path(xdg_config) / "memkeep" / filename
        if xdg_path.exists():
            return xdg_path

    default_path = Path.home() / ".config" / "memkeep" / filename
    if default_path.exists():
        return default_path

    if xdg_config:
        return Path(xdg_config) / "memkeep" / filename
    return default_path


def get_xdg_data_path(subdir: str = "") -> Path:
    """Get XDG-compliant data directory path.

    - $XDG_DATA_HOME/memkeep/{subdir} (if XDG_DATA_HOME is set)
    - ~/.local/share/memkeep/{subdir} (XDG default)

    Args:
        subdir: Optional subdirectory within the memkeep data dir

    Returns:
        Path to data directory
    """
    xdg_data = os.environ.get("XDG_DATA_HOME", str(Path.home() / ".local" / "share"))
    data_path = Path(xdg_data) / "memkeep"
    if subdir:
        data_path = data_path / subdir
    return data_path
