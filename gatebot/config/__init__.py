"""Configuration module for gatebot."""

from gatebot.config.loader import get_config_path, load_config
from gatebot.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
