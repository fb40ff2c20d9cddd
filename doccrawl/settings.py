"""Settings loading from TOML with environment overrides."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import tomllib

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
DEFAULT_LOGGING_PATH = Path("config/logging.yaml")


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the TOML configuration file.

    ``DOCCRAWL_SETTINGS`` replaces the default path and ``DOCCRAWL_DATA_ROOT``
    replaces ``[app].data_root``. A missing file yields built-in defaults.
    """
    if path is None:
        path = Path(os.environ.get("DOCCRAWL_SETTINGS", DEFAULT_SETTINGS_PATH))
    settings: Dict[str, Any] = {}
    if path.exists():
        with path.open("rb") as handle:
            settings = tomllib.load(handle)
    data_root = os.environ.get("DOCCRAWL_DATA_ROOT")
    if data_root:
        app = settings.setdefault("app", {})
        app["data_root"] = data_root
        app.pop("db_path", None)
        app.pop("exports_dir", None)
    return settings


def logging_config_path(settings: Dict[str, Any]) -> Path:
    return Path(settings.get("logging", {}).get("config_path", DEFAULT_LOGGING_PATH))
