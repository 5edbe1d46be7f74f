"""Configuration module for testbridge."""

from testbridge.config.loader import load_config, get_config_path, save_config
from testbridge.config.schema import Config, LoggingConfig, TestServerConfig

__all__ = ["Config", "LoggingConfig", "TestServerConfig", "load_config", "get_config_path", "save_config"]
