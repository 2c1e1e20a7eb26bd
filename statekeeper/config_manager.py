"""
Logging configuration for the command line.

Console output goes through colorlog; structured executor events are
rendered by structlog on top of the same handlers.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import colorlog
from dotenv import load_dotenv

from .logging_config import configure_logging

load_dotenv(override=False)

VALID_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class LoggingConfig:
    """Configuration for logging behavior."""

    level: str = field(default_factory=lambda: os.getenv("STATEKEEPER_LOG_LEVEL", "WARNING"))
    format: str = field(
        default_factory=lambda: os.getenv(
            "STATEKEEPER_LOG_FORMAT", "%(log_color)s%(levelname)s:%(name)s:%(message)s"
        )
    )
    file_output: Optional[str] = field(default_factory=lambda: os.getenv("STATEKEEPER_LOG_FILE"))
    json_output: bool = field(
        default_factory=lambda: os.getenv("STATEKEEPER_LOG_JSON", "false").lower() == "true"
    )

    def __post_init__(self) -> None:
        """Validate logging configuration."""
        if self.level.upper() not in VALID_LEVELS:
            raise ValueError(f"Log level must be one of: {VALID_LEVELS}")
        self.level = self.level.upper()

    def get_log_level(self) -> int:
        """Convert string log level to logging constant."""
        return int(getattr(logging, self.level))


def setup_logging(config: LoggingConfig) -> None:
    """
    Setup logging configuration based on config.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(config.get_log_level())

    console_handler = colorlog.StreamHandler()
    console_handler.setFormatter(colorlog.ColoredFormatter(config.format))
    root_logger.addHandler(console_handler)

    if config.file_output:
        file_handler = logging.FileHandler(config.file_output)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s:%(name)s:%(message)s")
        )
        root_logger.addHandler(file_handler)

    configure_logging(config.get_log_level(), json_output=config.json_output)
