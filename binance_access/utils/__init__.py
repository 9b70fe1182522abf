"""Configuration loading and logging utilities."""

from .config_loader import ConfigLoader
from .logging_setup import setup_logging

__all__ = [
    "ConfigLoader",
    "setup_logging",
]
