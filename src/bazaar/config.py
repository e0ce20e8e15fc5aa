"""Configuration loading utilities for the Bazaar server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable BAZAAR_CONFIG
3. Fallback to "config/default.yaml"

Values from the file are merged over built-in defaults, then optional
overrides from environment variables with prefix ``BAZAAR__`` are applied
(e.g., BAZAAR__STORAGE__DATA_DIR=/srv/bazaar).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origins": ["*"],
        "cookie_name": "sid",
        "cookie_secure": False,
    },
    "storage": {
        "data_dir": "data",
        "uploads_dir": "data/uploads",
        "max_upload_mb": 8,
    },
    "auth": {
        "admins": [],
        "bootstrap_users": [],
        "bcrypt_rounds": 12,
        "session_idle_seconds": 12 * 60 * 60,
        "session_max_age_seconds": 7 * 24 * 60 * 60,
    },
    "logging": {
        "level": "INFO",
    },
}


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix BAZAAR__."""
    prefix = "BAZAAR__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., BAZAAR__AUTH__BCRYPT_ROUNDS -> cfg["auth"]["bcrypt_rounds"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def as_list(value: Any) -> List[str]:
    """Normalize a list-valued setting that may arrive as a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``BAZAAR_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the parsed file, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("BAZAAR_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))
