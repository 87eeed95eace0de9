"""Configuration loading: YAML file plus environment overrides."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import yaml

from .app_server import AppServerConfig

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8787
MIN_PORT = 1
MAX_PORT = 65535
DEFAULT_REFRESH_DELAY_MS = 600


class ConfigError(ValueError):
    """Raised for invalid configuration values."""


@dataclass
class Settings:
    """Resolved runtime settings."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    data_dir: str = "data"
    repo_file: str = "prd.json"
    refresh_delay_seconds: float = DEFAULT_REFRESH_DELAY_MS / 1000
    app_server: AppServerConfig = field(default_factory=AppServerConfig)


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_port(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        port = int(value)
    except ValueError:
        port = None
    if port is None or port < MIN_PORT or port > MAX_PORT:
        raise ConfigError(f'Invalid PORT: "{value}". Set a number between {MIN_PORT} and {MAX_PORT}.')
    return port


def resolve_settings(
    config: Optional[dict] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> Settings:
    """Merge config file values with environment overrides."""
    config = config or {}
    env = os.environ if env is None else env
    cwd = cwd or os.getcwd()

    server_config = config.get("server", {})
    paths_config = config.get("paths", {})
    thread_list_config = config.get("thread_list", {})

    host = env.get("HOST") or env.get("CODEXDOCK_HOST") or server_config.get("host", DEFAULT_HOST)
    port = parse_port(env.get("PORT"))
    if port is None:
        port = int(server_config.get("port", DEFAULT_PORT))

    data_dir = env.get("CODEXDOCK_DATA_DIR") or paths_config.get("data_dir", "data")
    data_dir = str((Path(cwd) / data_dir).resolve())

    repo_file = paths_config.get("repo_file")
    if not repo_file:
        environment = env.get("CODEXDOCK_ENV", "production")
        repo_file = "dev.json" if environment in ("development", "test") else "prd.json"

    refresh_delay_ms = thread_list_config.get("refresh_delay_ms", DEFAULT_REFRESH_DELAY_MS)

    return Settings(
        host=host,
        port=port,
        data_dir=data_dir,
        repo_file=repo_file,
        refresh_delay_seconds=refresh_delay_ms / 1000,
        app_server=AppServerConfig.from_dict(config.get("app_server")),
    )
