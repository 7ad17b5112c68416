"""Cached settings accessor.

Usage:
    from envsync.core.settings import get_settings

    settings = get_settings()
    cache_path = settings.user_config_path

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from envsync.core.config import EnvsyncSettings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> EnvsyncSettings:
    """Get the cached application settings.

    Returns:
        Validated EnvsyncSettings instance.

    Raises:
        SystemExit: If settings cannot be loaded (fail-fast behavior).
    """
    try:
        settings = EnvsyncSettings()
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    logger.debug(
        "Configuration loaded: home_dir=%s, snapshot_hash=%s",
        settings.home_dir,
        settings.get_snapshot_hash()[:16],
    )
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Example:
        def test_something(monkeypatch):
            clear_settings_cache()
            monkeypatch.setenv("ENVSYNC_LOG_LEVEL", "debug")
            settings = get_settings()
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")
