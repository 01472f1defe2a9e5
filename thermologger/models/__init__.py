"""
Models Package

Configuration and live channel state.
"""

from .config import (
    AppConfig,
    ChannelConfig,
    ConfigError,
    DataloggerDescriptor,
    GlobalSettings,
    load_config,
)
from .channel_store import ChannelEntry, ChannelKey, ChannelSnapshot, ChannelStateStore

__all__ = [
    'AppConfig',
    'ChannelConfig',
    'ConfigError',
    'DataloggerDescriptor',
    'GlobalSettings',
    'load_config',
    'ChannelEntry',
    'ChannelKey',
    'ChannelSnapshot',
    'ChannelStateStore',
]
