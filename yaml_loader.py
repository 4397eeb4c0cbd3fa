import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("config")

DEFAULT_CONFIG_PATH = Path("./config/config.yaml")

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "switchbot": {
        "base_url": "https://api.switch-bot.com/v1.1",
        "timeout": 10,
        "daily_quota": 10000,
    },
    "automation": {
        "enabled": True,
        "fast_interval": 5,
        "slow_interval": 30,
    },
    "storage": {
        "data_dir": "./data",
        "history_limit": 1000,
    },
    "web": {
        "host": "0.0.0.0",
        "port": 8000,
    },
    "logging": {
        "level": "INFO",
        "file": "logs/automation.log",
    },
}


def load_yaml_config(filepath: Path) -> dict:
    """
    Loads configuration data from a YAML file.

    Args:
        filepath (Path): The path object pointing to the YAML configuration file.

    Returns:
        dict: The loaded configuration as a dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If there is an issue parsing the YAML content.
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found at: {filepath}")

    try:
        with open(filepath, 'r') as f:
            config_data = yaml.safe_load(f)
        return config_data if config_data is not None else {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file: {e}")
        raise


def load_config(filepath: Optional[Path] = None) -> dict:
    """
    Load config.yaml merged over DEFAULTS.

    A missing file yields the defaults. SWITCHBOT_TOKEN / SWITCHBOT_SECRET
    environment variables override the file's credentials.
    """
    path = filepath or DEFAULT_CONFIG_PATH
    try:
        user = load_yaml_config(path)
    except FileNotFoundError:
        logger.info(f"No config at {path}, using defaults")
        user = {}

    config = {section: dict(values) for section, values in DEFAULTS.items()}
    for section, values in user.items():
        if isinstance(values, dict):
            config.setdefault(section, {}).update(values)
        else:
            config[section] = values

    switchbot = config.setdefault("switchbot", {})
    if os.environ.get("SWITCHBOT_TOKEN"):
        switchbot["token"] = os.environ["SWITCHBOT_TOKEN"]
    if os.environ.get("SWITCHBOT_SECRET"):
        switchbot["secret"] = os.environ["SWITCHBOT_SECRET"]

    return config


def get_conf(config: dict, section: str, key: str, default=None):
    """Get configuration value."""
    return config.get(section, {}).get(key, default)
