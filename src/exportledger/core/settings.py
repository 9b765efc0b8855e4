"""Process-wide settings for the export worker.

``get_settings()`` loads the environment once per process and exits when the
configuration is unusable. ``configure_logging()`` applies the configured
log level. Tests call ``clear_settings_cache()`` after changing the
environment.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from exportledger.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _validation_lines(error: ValidationError) -> list[str]:
    lines = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "settings"
        lines.append(f"  - {field}: {item['msg']}")
    return lines


def startup_summary(settings: Settings) -> dict[str, str]:
    """Non-secret settings worth logging once at startup."""
    exports = settings.exports
    return {
        "environment": settings.environment.value,
        "claim_backend": exports.claim_backend.value,
        "require_atomic_claim": str(exports.require_atomic_claim).lower(),
        "max_concurrent": str(exports.max_concurrent),
        "bucket": exports.bucket,
        "root_hour_utc": str(settings.ledger.root_hour_utc),
        "policy_hash": settings.get_policy_hash()[:16],
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: If the environment does not describe a usable worker.
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid worker configuration:\n%s", "\n".join(_validation_lines(e)))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid worker configuration: %s (field: %s)", e.message, e.field or "-")
        raise SystemExit(1) from e

    return settings


def configure_logging(settings: Settings) -> None:
    """Configure root logging at the settings' log level."""
    logging.basicConfig(level=getattr(logging, settings.log_level), format=LOG_FORMAT)


def clear_settings_cache() -> None:
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Settings, or None when they cannot be loaded."""
    try:
        return get_settings()
    except SystemExit:
        return None
