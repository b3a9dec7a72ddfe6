"""
DASVF Logging Configuration

Logging setup with:
- Console output, colored when attached to a terminal
- Optional file logging
- Setup from the logging section of an EngineConfig
- Module-level loggers under the DASVF hierarchy
- Timing of voxel sweeps and adjoint passes
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

from ..errors import ConfigurationError

ROOT_LOGGER = "DASVF"


class ColorFormatter(logging.Formatter):
    """Compact console formatter, colored by level"""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = f"[{self.formatTime(record, self.datefmt)}] {record.levelname[0]} | {record.name}: {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if not self.use_color:
            return message
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        return f"{color}{message}{self.COLORS['RESET']}"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    module_name: str = ROOT_LOGGER
) -> logging.Logger:
    """
    Setup logging for DASVF

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        module_name: Root module name for logger hierarchy

    Returns:
        Configured root logger
    """
    numeric_level = logging.getLevelName(str(level).upper())
    if not isinstance(numeric_level, int):
        raise ConfigurationError(f"Invalid logging level: {level}")

    logger = logging.getLogger(module_name)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColorFormatter(use_color=sys.stdout.isatty()))
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    return logger


def setup_logging_from_config(config) -> logging.Logger:
    """
    Setup logging from a LoggingConfig (the logging section of EngineConfig)

    Args:
        config: Object with level and log_file attributes

    Returns:
        Configured root logger
    """
    return setup_logging(config.level, config.log_file)


def get_logger(name: str) -> logging.Logger:
    """
    Get a module-level logger

    Args:
        name: Module name (will be prefixed with DASVF)

    Returns:
        Logger instance
    """
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class Timer:
    """
    Context manager timing a code section, logged at debug level

    Args:
        name: Section name
        logger: Logger to report to (default: DASVF.timer)
        detail: Optional size information appended to the report
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, detail: str = ""):
        self.name = name
        self.logger = logger or get_logger("timer")
        self.detail = detail
        self.start_time = None
        self.elapsed = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed = time.perf_counter() - self.start_time
        suffix = f" ({self.detail})" if self.detail else ""
        self.logger.debug(f"{self.name}{suffix}: {self.elapsed:.3f}s")
