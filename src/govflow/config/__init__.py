"""
Configuration management for govflow.

This module handles loading, validating, and saving configuration settings.
"""

from govflow.config.settings import (
    DEFAULT_CONFIG_DIR,
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
]
