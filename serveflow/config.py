"""
serveflow configuration system.

Configuration is loaded in this priority order:
1. Values set via serveflow.configure() (highest priority)
2. Values from serveflow.config.yaml in current directory
3. Environment variables (QSTASH_URL, QSTASH_TOKEN, ...)
4. Default values

Usage:
    >>> import serveflow
    >>> serveflow.configure(
    ...     qstash_token="...",
    ...     current_signing_key="...",
    ...     next_signing_key="...",
    ... )
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from loguru import logger

from serveflow.core.exceptions import ConfigurationError

CONFIG_FILE_NAME = "serveflow.config.yaml"

# Environment variable -> config attribute
ENV_VARIABLES = {
    "QSTASH_URL": "qstash_url",
    "QSTASH_TOKEN": "qstash_token",
    "QSTASH_CURRENT_SIGNING_KEY": "current_signing_key",
    "QSTASH_NEXT_SIGNING_KEY": "next_signing_key",
    "QSTASH_REGION": "region",
    "UPSTASH_WORKFLOW_URL": "workflow_url",
}


def _load_yaml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from serveflow.config.yaml in current directory.

    Returns:
        Configuration dictionary, empty dict if file not found

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping
    """
    config_path = path or Path.cwd() / CONFIG_FILE_NAME
    if not config_path.exists():
        return {}

    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping of options")
    return config


@dataclass
class ServeflowConfig:
    """
    Global configuration for serveflow.

    Attributes:
        qstash_url: Queue service url
        qstash_token: Queue service token
        current_signing_key: Key verifying inbound requests
        next_signing_key: Key verifying inbound requests after rotation
        region: Region of a multi-region setup, e.g. "US_EAST_1"
        retries: Retries of requests to the queue service
        workflow_url: Public origin of the workflow endpoints, replaces the origin
            of inbound request urls (useful behind proxies and tunnels)
        verbose: Log engine events at INFO level
    """

    qstash_url: Optional[str] = None
    qstash_token: Optional[str] = None
    current_signing_key: Optional[str] = None
    next_signing_key: Optional[str] = None
    region: Optional[str] = None
    retries: int = 5
    workflow_url: Optional[str] = None
    verbose: bool = False


def _config_from_sources(
    environment: Optional[Mapping[str, str]] = None,
    yaml_config: Optional[Dict[str, Any]] = None,
) -> ServeflowConfig:
    """Create a ServeflowConfig from environment variables and the YAML file."""
    env = os.environ if environment is None else environment
    values: Dict[str, Any] = {}

    for variable, attribute in ENV_VARIABLES.items():
        if env.get(variable):
            values[attribute] = env[variable]

    file_values = _load_yaml_config() if yaml_config is None else yaml_config
    valid_keys = {f.name for f in fields(ServeflowConfig)}
    for key, value in file_values.items():
        if key not in valid_keys:
            logger.warning(f"Ignoring unknown option {key!r} in {CONFIG_FILE_NAME}")
            continue
        values[key] = value

    return ServeflowConfig(**values)


# Global singleton
_config: Optional[ServeflowConfig] = None


def configure(**kwargs: Any) -> None:
    """
    Configure serveflow defaults.

    Args:
        qstash_url: Queue service url
        qstash_token: Queue service token
        current_signing_key: Current signing key
        next_signing_key: Next signing key
        region: Region of a multi-region setup
        retries: Retries of requests to the queue service
        workflow_url: Public url of the workflow endpoints
        verbose: Log engine events at INFO level

    Raises:
        ValueError: For unknown options
    """
    config = get_config()

    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            valid_keys = [f.name for f in fields(ServeflowConfig)]
            raise ValueError(
                f"Unknown config option: {key}. Valid options: {', '.join(valid_keys)}"
            )


def get_config() -> ServeflowConfig:
    """
    Get the current configuration.

    If not yet configured, loads it from the environment and
    serveflow.config.yaml.
    """
    global _config
    if _config is None:
        _config = _config_from_sources()
    return _config


def reset_config() -> None:
    """
    Reset configuration to defaults.

    Primarily used for testing.
    """
    global _config
    _config = None


def get_environment(config: Optional[ServeflowConfig] = None) -> Dict[str, str]:
    """
    Environment used for credential resolution.

    A region set through configure() or the YAML file takes the place of
    ``QSTASH_REGION``.
    """
    config = config or get_config()
    environment = dict(os.environ)
    if config.region:
        environment["QSTASH_REGION"] = config.region
    return environment
