"""
config/ — chatbridge configuration

    from chatbridge.config import load_settings, Settings, ConfigError
"""

from chatbridge.config.settings import ConfigError, Settings, ShortLinkMode, load_settings

__all__ = ["ConfigError", "Settings", "ShortLinkMode", "load_settings"]
