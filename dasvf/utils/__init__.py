"""DASVF Utilities Module"""

from .logging_config import setup_logging, setup_logging_from_config, get_logger, Timer
from .device import get_device, resolve_dtype
from .parallel import resolve_num_threads, chunk_ranges, parallel_for, parallel_reduce

__all__ = [
    "setup_logging",
    "setup_logging_from_config",
    "get_logger",
    "Timer",
    "get_device",
    "resolve_dtype",
    "resolve_num_threads",
    "chunk_ranges",
    "parallel_for",
    "parallel_reduce",
]
