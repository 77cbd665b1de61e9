"""
Configuration Module

Loads the YAML configuration file and fills in defaults for anything the
file leaves out.
"""

import copy
import logging
import os
from typing import Any, Dict, Optional
import yaml

from .catalog.manager import DEFAULT_PROFILE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.roastprofile/config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "storage": {
        "path": "~/.roastprofile/store.yaml",
        "capacity": None           # bytes, None for unlimited
    },
    "catalog": {
        "write_retries": 3,
        "emergency_eviction": True,
        "default_profile": DEFAULT_PROFILE
    },
    "roaster": {
        "loop_interval": 1.0,      # seconds between state machine ticks
        "cooling_target": 145,     # °F
        "max_cooling_time": 1800000,  # ms
        "max_safe_temp": 500.0,    # °F
        "sensor_fault_temp": 600.0,   # disconnected thermocouple reads far above this
        "max_bad_readings": 5
    },
    "logging": {
        "level": "INFO"
    }
}


class ConfigError(Exception):
    """Raised when the configuration file cannot be parsed"""
    pass


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration, falling back to defaults

    Args:
        config_path: Path to YAML configuration file, or None for defaults only

    Returns:
        Configuration dictionary with every section present

    Raises:
        ConfigError: If the file exists but is not valid YAML mapping
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    path = os.path.expanduser(config_path)
    if not os.path.exists(path):
        logger.info(f"No configuration at {path}, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid configuration file {path}: {e}") from e
    if not isinstance(overrides, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")

    logger.debug(f"Loaded configuration from {path}")
    return _merge(DEFAULT_CONFIG, overrides)


def write_default_config(config_path: str) -> str:
    """Write the default configuration if the file does not exist yet

    Returns:
        Expanded path of the configuration file
    """
    path = os.path.expanduser(config_path)
    if not os.path.exists(path):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Created default configuration at {path}")
    return path
