"""
Configuration module - Base settings class for environment configuration.
"""

from common.config.base_settings import BaseAppSettings, configure_logging

__all__ = ["BaseAppSettings", "configure_logging"]
