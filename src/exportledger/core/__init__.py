"""exportledger core module.

Shared configuration used by the worker and services.
"""

from exportledger.core.config import (
    ClaimBackendMode,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    ExportSettings,
    LedgerSettings,
    RetentionSettings,
    S3Settings,
    Settings,
)
from exportledger.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ClaimBackendMode",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "ExportSettings",
    "LedgerSettings",
    "RetentionSettings",
    "S3Settings",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
