"""medseal core module.

Shared components used across all services:
- Configuration management
- Settings accessor
"""

from medseal.core.config import (
    ConfigValidationError,
    CryptoSettings,
    Environment,
    LedgerSettings,
    RotationSettings,
    S3Settings,
    Settings,
)
from medseal.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "CryptoSettings",
    "Environment",
    "LedgerSettings",
    "RotationSettings",
    "S3Settings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
