"""envsync core module.

Shared components used across all services:
- Configuration management
- Workspace identifiers
- Error taxonomy
- Atomic file helpers
"""

from envsync.core.config import (
    ApiSettings,
    ConfigValidationError,
    EnvsyncSettings,
    SyncSettings,
)
from envsync.core.settings import clear_settings_cache, get_settings

__all__ = [
    "ApiSettings",
    "ConfigValidationError",
    "EnvsyncSettings",
    "SyncSettings",
    "clear_settings_cache",
    "get_settings",
]
