"""
Infrastructure Configuration - Unified Configuration System
==========================================================
Single source of truth for all relay configuration.

- AppSettings is the single source of truth
- Settings are created once by the composition root (chat_relay.main)
  and passed down; components never look them up on their own
"""

from .settings import AppSettings, LoggingSettings, RelaySettings, HeartbeatSettings, StorageSettings, ApiSettings, StorageBackend
from .config_loader import load_app_settings_from_json, get_settings_from_working_directory

__all__ = [
    'AppSettings',
    'LoggingSettings',
    'RelaySettings',
    'HeartbeatSettings',
    'StorageSettings',
    'ApiSettings',
    'StorageBackend',
    'load_app_settings_from_json',
    'get_settings_from_working_directory',
]
