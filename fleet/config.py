"""
Application configuration.

Defaults, overlaid by config.yaml (or the file named by FLEET_CONFIG), then
by a few environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from fleet.wp_cli import DEFAULT_CLI_DIR

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'

DEFAULTS: Dict[str, Any] = {
    'secret_key': 'dev-secret-key-change-in-production',
    'db_path': 'state/fleet.sqlite',
    'upload_dir': 'uploads',
    'ssh_key_dir': 'state/keys',
    'remote_cli_dir': DEFAULT_CLI_DIR,
    'queue_concurrency': 8,
    'scan_concurrency': 8,
    'queue_retry_delay': 1.0,
    'php_binary_cache_seconds': 300,
    'scan_lock_timeout': 600,
    'daily_scan_interval_hours': 24,
    'ssh_connect_timeout': 15,
}

INT_KEYS = ('queue_concurrency', 'scan_concurrency', 'scan_lock_timeout', 'ssh_connect_timeout')
FLOAT_KEYS = ('queue_retry_delay', 'php_binary_cache_seconds', 'daily_scan_interval_hours')

ENV_OVERRIDES = {
    'SECRET_KEY': 'secret_key',
    'FLEET_DB_PATH': 'db_path',
    'FLEET_UPLOAD_DIR': 'upload_dir',
}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration.

    Args:
        path: YAML file to read; defaults to $FLEET_CONFIG or config.yaml.
              A missing file is not an error.

    Returns:
        Complete configuration dictionary
    """
    config = dict(DEFAULTS)

    config_path = Path(path or os.environ.get('FLEET_CONFIG') or DEFAULT_CONFIG_PATH)
    if config_path.exists():
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path} must contain a mapping")
        unknown = set(loaded) - set(DEFAULTS)
        if unknown:
            logger.warning(f"Ignoring unknown config keys in {config_path}: {', '.join(sorted(unknown))}")
        config.update({k: v for k, v in loaded.items() if k in DEFAULTS})
        logger.debug(f"Loaded configuration from {config_path}")

    for env_name, key in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            config[key] = os.environ[env_name]

    for key in INT_KEYS:
        config[key] = int(config[key])
    for key in FLOAT_KEYS:
        config[key] = float(config[key])

    return config
