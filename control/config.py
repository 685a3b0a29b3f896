from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "host": "localhost",
    "port": 8474,
    "logging": {"level": "INFO"},
    "seed": None,
    "link": {"read_size": 32768},
    "proxies": [],
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_server_config(path: Optional[str | Path] = None) -> Dict[str, Any]:
    """Load the server configuration, falling back to defaults for missing keys.

    A missing file is not an error: the defaults are returned as is.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path is None:
        return config

    file_path = Path(path)
    if not file_path.exists():
        logger.info("[Config] %s not found; using defaults", file_path)
        return config

    with file_path.open("r", encoding="utf-8") as config_file:
        loaded = json.load(config_file)
    if not isinstance(loaded, dict):
        raise ValueError(f"Configuration in {file_path} must be a JSON object")
    if not isinstance(loaded.get("proxies", []), list):
        raise ValueError(f"'proxies' in {file_path} must be a list")
    return _merge(config, loaded)
