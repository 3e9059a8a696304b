"""
Configuration for the audit log.

Settings are resolved in this order (later wins):
1. Built-in defaults
2. The `audis:` section of a YAML file (values may reference ${ENV_VARS})
3. Environment variables (AUDIS_HOST, AUDIS_MAX_RETRIES, AUDIS_LOG_LEVEL),
   including any loaded from a .env file
"""

import logging
import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional
import structlog
import yaml
from dotenv import find_dotenv, load_dotenv

logger = structlog.get_logger(__name__)

DEFAULT_HOST = "redis://127.0.0.1:6379"

# Used when a background channel is requested with capacity 0
DEFAULT_QUEUE_CAPACITY = 100


@dataclass(frozen=True)
class AudisConfig:
    """Connection and retry settings for one audit log."""

    # URL of the Redis server holding the audit log
    host: str = DEFAULT_HOST

    # Socket timeout for every Redis round-trip, in seconds
    socket_timeout: float = 5.0

    # How many times a conflicting transaction is attempted before
    # TransactionContention is raised
    max_retries: int = 16

    # Linear backoff between conflicting attempts (attempt * backoff)
    retry_backoff_seconds: float = 0.002

    # Default capacity of background ingestion channels
    queue_capacity: int = DEFAULT_QUEUE_CAPACITY

    log_level: str = "INFO"


DEFAULT_CONFIG = AudisConfig()

_ENV_OVERRIDES = {
    "AUDIS_HOST": ("host", str),
    "AUDIS_MAX_RETRIES": ("max_retries", int),
    "AUDIS_LOG_LEVEL": ("log_level", str),
}


def _expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} references in string config values."""
    if isinstance(value, str) and "${" in value:
        def replace_env(match):
            env_var = match.group(1)
            return os.environ.get(env_var, match.group(0))
        return re.sub(r'\$\{([^}]+)\}', replace_env, value)
    return value


def _from_mapping(section: dict) -> dict:
    types = {f.name: f.type for f in fields(AudisConfig)}
    values = {}
    for key, value in section.items():
        if key not in types:
            logger.warning("unknown_config_key", key=key)
            continue
        try:
            values[key] = types[key](_expand_env_vars(value))
        except (TypeError, ValueError) as e:
            raise ValueError(f"bad value for {key}: {value!r}") from e
    return values


def load_config(path: Optional[str] = None) -> AudisConfig:
    """
    Load configuration from an optional YAML file plus the environment.

    Args:
        path: Path to a YAML file with an `audis:` section (optional)

    Returns:
        Resolved AudisConfig
    """
    load_dotenv(find_dotenv(usecwd=True))
    config = DEFAULT_CONFIG

    if path:
        config_path = Path(path)
        if not config_path.exists():
            logger.warning("config_not_found_using_defaults", path=path)
        else:
            with open(config_path) as f:
                try:
                    raw = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ValueError(f"{path} is not valid YAML: {e}") from e
            section = raw.get("audis") if isinstance(raw, dict) else None
            if section is None:
                section = {}
            elif not isinstance(section, dict):
                raise ValueError(f"{path}: the audis section must be a mapping")
            config = replace(config, **_from_mapping(section))
            logger.info("config_loaded", path=path)

    overrides = {}
    for env_var, (name, cast) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            overrides[name] = cast(value)
    if overrides:
        config = replace(config, **overrides)

    if config.max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {config.max_retries}")
    if not isinstance(logging.getLevelName(config.log_level.upper()), int):
        raise ValueError(f"unknown log_level '{config.log_level}'")

    return config
