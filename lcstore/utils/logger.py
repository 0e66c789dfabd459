"""
Centralized logging configuration for lcstore.

Provides colored console output and separate loggers for the store
subsystems (storage, accounts, notes, transactions, chain data, sync),
plus an `lcstore.sql` logger that receives traced SQL statements.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog


class StoreLogger:
    """Centralized logger for lcstore components"""

    _initialized = False
    _log_dir: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: int = logging.INFO,
        log_dir: Optional[Union[str, Path]] = None,
        log_to_file: bool = False,
        trace_sql: bool = False,
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_dir: Directory for log files. If None, uses ./logs
            log_to_file: Whether to write logs to file
            trace_sql: Show traced SQL statements whatever the store level
        """
        if cls._initialized:
            return

        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            cls._log_dir.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger("lcstore")
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        handler_level = min(level, logging.DEBUG) if trace_sql else level
        logging.getLogger("lcstore.sql").setLevel(logging.DEBUG if trace_sql else logging.NOTSET)

        console_handler = colorlog.StreamHandler(sys.stdout)
        console_handler.setLevel(handler_level)
        console_formatter = colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

        if log_to_file and cls._log_dir:
            file_handler = logging.FileHandler(cls._log_dir / "lcstore.log")
            file_handler.setLevel(handler_level)
            file_formatter = logging.Formatter(
                "%(asctime)s [%(name)s] %(levelname)-8s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            file_handler.setFormatter(file_formatter)
            root_logger.addHandler(file_handler)

        cls._initialized = True

    @classmethod
    def reset(cls):
        """Drop configured handlers so the next setup() starts fresh."""
        root_logger = logging.getLogger("lcstore")
        for handler in list(root_logger.handlers):
            handler.close()
            root_logger.removeHandler(handler)
        logging.getLogger("lcstore.sql").setLevel(logging.NOTSET)
        cls._initialized = False
        cls._log_dir = None

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger for a specific subsystem.

        Args:
            name: Subsystem name (e.g., 'storage.sqlite', 'state.notes')

        Returns:
            Logger instance
        """
        if not cls._initialized:
            cls.setup()

        return logging.getLogger(f"lcstore.{name}")


    @classmethod
    def get_sql_logger(cls) -> logging.Logger:
        """
        Logger for SQL statement tracing.

        Statements are logged at DEBUG, so they only show once the store
        level (or this logger's own level) is DEBUG.
        """
        return cls.get_logger("sql")


# Convenience functions
def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return StoreLogger.get_logger(name)


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
    log_to_file: bool = False,
    trace_sql: bool = False,
):
    """Setup logging configuration"""
    StoreLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file, trace_sql=trace_sql)
