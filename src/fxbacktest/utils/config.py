"""JSON configuration loading shared by the jobs and the backtest pipeline.

Config files live in ``config/`` at the project root. Relative paths found in
their ``data_paths`` section are resolved against that root so the jobs can be
launched from any working directory.
"""

import json
import os
from pathlib import Path
from typing import Optional

# src/fxbacktest/utils/config.py -> project root
ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = ROOT / "config"


def load_config(config_path: str | Path) -> dict:
    """Load configuration from a JSON file.

    Args:
        config_path: Path to the config JSON file

    Returns:
        Dictionary with configuration parameters

    Raises:
        FileNotFoundError: If the file does not exist
        json.JSONDecodeError: If the file is not valid JSON
    """
    with open(config_path, "r") as f:
        return json.load(f)


def default_config_path(filename: str) -> Path:
    return CONFIG_DIR / filename


def resolve_path(path: str | Path, root: Path = ROOT) -> Path:
    """Return *path* unchanged when absolute, otherwise anchored at *root*."""
    path = Path(path)
    if path.is_absolute():
        return path
    return root / path


def get_data_path(config: dict, key: str, root: Path = ROOT) -> Path:
    """Resolve ``config["data_paths"][key]``.

    Raises:
        KeyError: If the data path is not configured
    """
    return resolve_path(config["data_paths"][key], root)


def read_secret(env_name: Optional[str]) -> Optional[str]:
    """Read an API key from the environment variable named in config."""
    if not env_name:
        return None
    value = os.environ.get(env_name)
    if value is None or not value.strip():
        return None
    return value.strip()
