"""
Configuration loader for the control plane.

The configuration is stored in an optional YAML file with one section
per component (`commands`, `sessions`, `sidecar`, `proxy`,
`shutdown`). Sensitive values like the sidecar credentials are never
stored in the YAML file; they are read from environment variables,
which may be populated from a `.env` file by the CLI.
"""

import os
from typing import Any, Dict, Optional

import yaml


def load_app_config(path: Optional[str]) -> Dict[str, Any]:
    """
    Load the application configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file, or None to run with
            built-in defaults.

    Returns:
        A dictionary representing the configuration.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the top-level configuration is not a mapping.
    """
    if path is None:
        return {}

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found at: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError("Top-level configuration must be a mapping/dictionary.")

    return data


def section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a config section, treating a missing or null entry as empty."""
    value = cfg.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping.")
    return value


def env_or(cfg: Dict[str, Any], key: str, env_var: str, default: Any) -> Any:
    """
    Resolve a setting with environment variables taking precedence.

    The environment value is converted to the type of `default` when the
    default is an int or float.
    """
    raw = os.getenv(env_var)
    if raw is None or raw == "":
        return cfg.get(key, default)
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
