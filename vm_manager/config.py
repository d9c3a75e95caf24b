"""Configuration loader for the VM manager.

Reads an optional YAML configuration file, applies environment overrides and
validates the result using Pydantic models.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from vm_manager.models import SystemConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yml"
INSECURE_API_KEY = "change-this-insecure-default"

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "API_KEY": "api_key",
    "VM_HOST": "vm_host",
    "PORT": "listen_port",
    "LOG_LEVEL": "log_level",
    "DOCKER_HOST": "docker_base_url",
    "FTP_BASE_DIR": "ftp.base_dir",
    "FTP_ENABLED": "ftp.enabled",
}


def _apply_env_overrides(data: dict) -> dict:
    for env_name, dotted in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        target = data
        *parents, leaf = dotted.split(".")
        for parent in parents:
            target = target.setdefault(parent, {})
        target[leaf] = value
    return data


def load_config(config_path: Optional[str] = None) -> SystemConfig:
    """Load and validate configuration from YAML file and environment.

    Args:
        config_path: Path to config file. If None, reads from CONFIG_FILE
            environment variable or defaults to 'config.yml' in current directory.
            A missing default file is not an error; the built-in defaults apply.

    Returns:
        Validated SystemConfig object.

    Raises:
        FileNotFoundError: If an explicitly named config file does not exist.
        ValidationError: If the configuration does not match expected schema.
        yaml.YAMLError: If config file is not valid YAML.
    """
    explicit = config_path is not None or os.getenv("CONFIG_FILE") is not None
    if config_path is None:
        config_path = os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE)

    config_file = Path(config_path)
    data: dict = {}

    if config_file.exists():
        logger.info(f"Loading configuration from {config_path}")
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML: {e}")
            raise
    elif explicit:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        logger.info("No configuration file found, using defaults")

    try:
        config = SystemConfig(**_apply_env_overrides(data))
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    if config.api_key == INSECURE_API_KEY:
        logger.warning("Using the insecure default API key; set API_KEY before exposing this daemon")
    logger.info(
        f"Loaded configuration for {len(config.port_ranges)} workload types, public host {config.vm_host}"
    )
    return config
