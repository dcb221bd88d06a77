"""Utility modules."""

from .config_loader import get_nested, load_config, merge_configs, read_yaml
from .logger import setup_logger, get_logger, LoggerMixin

__all__ = [
    "read_yaml",
    "load_config",
    "merge_configs",
    "get_nested",
    "setup_logger",
    "get_logger",
    "LoggerMixin",
]
