"""Custodian core module.

Shared components used across all services:
- Configuration management
- Time source
"""

from custodian.core.clock import Clock, utcnow
from custodian.core.config import (
    CleanupSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    QuotaSettings,
    SessionSettings,
    Settings,
    StoreBackend,
)
from custodian.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "CleanupSettings",
    "Clock",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "QuotaSettings",
    "SessionSettings",
    "Settings",
    "StoreBackend",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
    "utcnow",
]
