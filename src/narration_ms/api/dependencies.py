"""
FastAPI Dependency Injection Providers.

    1. get_settings() - Loads and caches application configuration
    2. get_narration_manager() - Creates/returns the singleton NarrationManager

Both are singletons: there is one Polly client, one playback device (the
connected game page) and one backlog per process.

Usage in Route Handlers:
    @router.post("/v1/speak")
    async def speak(req: SpeakRequest, manager: NarrationManager = Depends(get_narration_manager)):
        ...
"""
from __future__ import annotations

import os
from functools import lru_cache

from narration_ms.core.config import Settings, apply_env_overrides, load_settings
from narration_ms.core.logging import get_logger, warn
from narration_ms.services.narration_service import NarrationManager, get_manager

_LOG = get_logger("narration-ms.api")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache application settings.

    Reads NARRATION_MS_SETTINGS (default config/settings.yaml). A missing
    file falls back to built-in defaults plus environment overrides.
    """
    path = os.getenv("NARRATION_MS_SETTINGS", "config/settings.yaml")
    try:
        return load_settings(path)
    except FileNotFoundError:
        warn(_LOG, "settings_file_missing", path=path)
        return Settings(raw=apply_env_overrides({}))


def get_narration_manager() -> NarrationManager:
    """Get the singleton NarrationManager."""
    return get_manager(get_settings())
