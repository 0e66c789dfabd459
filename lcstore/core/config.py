"""
Store configuration for lcstore.

Defines where the database lives and how the store logs. Values come from
defaults, a `.env` file and the process environment, in increasing order of
precedence.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from dotenv import dotenv_values

ENV_PREFIX = "LCSTORE_"


@dataclass
class StoreConfig:
    """Local store configuration parameters"""

    # Database
    data_dir: Path = Path("data")
    db_name: str = "store.sqlite3"
    busy_timeout: float = 30.0  # Seconds to wait on a locked database

    # Logging
    log_level: int = logging.INFO
    log_dir: Path = Path("logs")
    log_to_file: bool = False
    trace_sql: bool = False  # Log every SQL statement on lcstore.sql

    def __post_init__(self):
        """Normalize paths and create the data directory"""
        self.data_dir = Path(self.data_dir).expanduser()
        self.log_dir = Path(self.log_dir).expanduser()
        self.data_dir.mkdir(exist_ok=True, parents=True)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


def _read_env(env_file: Optional[Union[str, Path]]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if env_file is not None and Path(env_file).exists():
        values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            values[key] = value
    return values


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_level(value: str) -> int:
    value = value.strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value}")
    return level


def load_config(env_file: Optional[Union[str, Path]] = ".env") -> StoreConfig:
    """
    Load configuration from a .env file and the environment.

    Recognized variables: LCSTORE_DATA_DIR, LCSTORE_DB_NAME,
    LCSTORE_BUSY_TIMEOUT, LCSTORE_LOG_LEVEL, LCSTORE_LOG_DIR,
    LCSTORE_LOG_TO_FILE, LCSTORE_TRACE_SQL.

    Args:
        env_file: Optional path to a .env file

    Returns:
        StoreConfig instance
    """
    env = _read_env(env_file)
    kwargs = {}

    if f"{ENV_PREFIX}DATA_DIR" in env:
        kwargs["data_dir"] = Path(env[f"{ENV_PREFIX}DATA_DIR"])
    if f"{ENV_PREFIX}DB_NAME" in env:
        kwargs["db_name"] = env[f"{ENV_PREFIX}DB_NAME"]
    if f"{ENV_PREFIX}BUSY_TIMEOUT" in env:
        kwargs["busy_timeout"] = float(env[f"{ENV_PREFIX}BUSY_TIMEOUT"])
    if f"{ENV_PREFIX}LOG_LEVEL" in env:
        kwargs["log_level"] = _parse_level(env[f"{ENV_PREFIX}LOG_LEVEL"])
    if f"{ENV_PREFIX}LOG_DIR" in env:
        kwargs["log_dir"] = Path(env[f"{ENV_PREFIX}LOG_DIR"])
    if f"{ENV_PREFIX}LOG_TO_FILE" in env:
        kwargs["log_to_file"] = _parse_bool(env[f"{ENV_PREFIX}LOG_TO_FILE"])
    if f"{ENV_PREFIX}TRACE_SQL" in env:
        kwargs["trace_sql"] = _parse_bool(env[f"{ENV_PREFIX}TRACE_SQL"])

    return StoreConfig(**kwargs)
