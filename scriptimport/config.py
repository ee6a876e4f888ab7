"""Loading import configuration from YAML or JSON files."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError
from .models.config import ImportConfig

logger = logging.getLogger(__name__)


def read_config_file(path: str) -> Dict[str, Any]:
    """
    Read a configuration file into a dictionary.

    ``.yaml``/``.yml`` files are parsed with PyYAML, anything else as JSON.

    Raises:
        ConfigurationError: if the file is missing or malformed
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Error parsing configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return data


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> ImportConfig:
    """
    Build an ImportConfig from a file and explicit overrides.

    Overrides with a value of None are ignored so unset command-line flags
    never mask file values.

    Args:
        path: YAML or JSON configuration file
        overrides: Values taking precedence over the file

    Returns:
        ImportConfig (not yet validated)
    """
    data: Dict[str, Any] = read_config_file(path) if path else {}
    if path:
        logger.info(f"Loaded configuration from {path}")

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "retry" and isinstance(value, dict):
            retry = dict(data.get("retry") or {})
            retry.update({k: v for k, v in value.items() if v is not None})
            data["retry"] = retry
        elif isinstance(value, dict) and isinstance(data.get(key), dict):
            merged = dict(data[key])
            merged.update(value)
            data[key] = merged
        else:
            data[key] = value

    try:
        return ImportConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e
