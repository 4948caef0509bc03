"""Configuration loader with environment variable expansion.

Values may reference the environment as ``${VAR}`` (required) or
``${VAR:-default}``. Settings are read with dot paths::

    retained = get_setting(config, "periods.retained", 3)
"""

import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml

ENV_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}")

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "config.yaml"


def expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment references in strings of ``obj``."""
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return _expand_string(obj)
    return obj


def _expand_string(value: str) -> str:
    def replacer(match):
        var_name, has_default, default_value = match.group(1), match.group(2) is not None, match.group(3)
        env_value = os.environ.get(var_name)
        if env_value is not None:
            return env_value
        if has_default:
            return default_value
        raise ValueError(f"Required environment variable '{var_name}' is not set (in '{value}')")

    return ENV_PATTERN.sub(replacer, value)


def get_setting(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """Look up a nested setting by dot path.

    Missing sections, missing keys and explicit nulls all yield ``default``.

    Example:
        >>> get_setting({"web": {"port": 9100}}, "web.port")
        9100
        >>> get_setting({"web": {}}, "web.telemetry_path", "/metrics")
        '/metrics'
    """
    value = config
    for key in key_path.split("."):
        if not isinstance(value, dict) or value.get(key) is None:
            return default
        value = value[key]
    return value


class ConfigLoader:
    """Load a YAML configuration file and expand environment references."""

    def __init__(self, config_path: str = None):
        """
        Args:
            config_path: Path to config.yaml (defaults to the bundled config/config.yaml)
        """
        self.config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    def load(self) -> Dict[str, Any]:
        """Read the file and return the expanded configuration.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If a required environment variable is not set
            yaml.YAMLError: If config file is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            raw_config = yaml.safe_load(f) or {}

        return expand_env_vars(raw_config)


def get_config(config_path: str = None) -> Dict[str, Any]:
    """Load configuration from ``config_path`` (or the bundled default)."""
    return ConfigLoader(config_path).load()
