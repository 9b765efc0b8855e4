"""Tests for configuration management.

Tests cover:
- Loading configuration from environment variables
- Defaults for the export worker, ledger and retention
- Validation of invalid configuration
- Production warnings for the claim strategy
- Settings singleton behavior
- Policy snapshot and hash
"""

import logging
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from exportledger.core.config import (
    DEFAULT_TIER_DAYS,
    ClaimBackendMode,
    ConfigValidationError,
    Environment,
    ExportSettings,
    RetentionSettings,
    Settings,
    validate_settings,
)
from exportledger.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
    startup_summary,
)


class TestSettingsDefaults:
    """Defaults when only the required variables are set."""

    def test_export_defaults(self, minimal_env):
        """Poll, concurrency and retry defaults."""
        with patch.dict(os.environ, minimal_env, clear=True):
            settings = Settings()

        assert settings.environment == Environment.DEV
        assert settings.exports.poll_interval == 5.0
        assert settings.exports.max_concurrent == 3
        assert settings.exports.max_failures == 3
        assert settings.exports.claim_backend == ClaimBackendMode.AUTO
        assert settings.exports.require_atomic_claim is False
        assert settings.exports.bucket == "exports"
        assert settings.exports.required_evidence_count == 5

    def test_ledger_defaults(self, minimal_env):
        """Roots are computed at 02:00 UTC and once at startup."""
        with patch.dict(os.environ, minimal_env, clear=True):
            settings = Settings()

        assert settings.ledger.root_hour_utc == 2
        assert settings.ledger.compute_root_on_startup is True
        assert settings.ledger.hash_salt.get_secret_value()

    def test_retention_defaults(self, minimal_env):
        """Plan tier windows and the stale grace period."""
        with patch.dict(os.environ, minimal_env, clear=True):
            settings = Settings()

        assert settings.retention.tier_days == DEFAULT_TIER_DAYS
        assert settings.retention.tier_days["enterprise"] == 730
        assert settings.retention.default_tier == "starter"
        assert settings.retention.stale_grace_days == 7
        assert settings.retention.interval_seconds == 3600


class TestSettingsFromEnvironment:
    """Nested settings loaded through the double-underscore delimiter."""

    def test_nested_overrides(self, minimal_env):
        env = {
            **minimal_env,
            "EXPORTLEDGER_EXPORTS__MAX_CONCURRENT": "7",
            "EXPORTLEDGER_EXPORTS__REQUIRE_ATOMIC_CLAIM": "true",
            "EXPORTLEDGER_LEDGER__ROOT_HOUR_UTC": "4",
            "EXPORTLEDGER_LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings()

        assert settings.exports.max_concurrent == 7
        assert settings.exports.require_atomic_claim is True
        assert settings.ledger.root_hour_utc == 4
        assert settings.log_level == "DEBUG"

    def test_tier_days_from_json(self, minimal_env):
        env = {
            **minimal_env,
            "EXPORTLEDGER_RETENTION__TIER_DAYS": '{"starter": 14, "pro": 60}',
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings()

        assert settings.retention.tier_days == {"starter": 14, "pro": 60}

    def test_missing_database_url_fails(self):
        with patch.dict(os.environ, {}, clear=True), pytest.raises(ValidationError):
            Settings()


class TestSettingsValidation:
    """Field and model validators."""

    def test_invalid_log_level(self, minimal_env):
        env = {**minimal_env, "EXPORTLEDGER_LOG_LEVEL": "verbose"}
        with patch.dict(os.environ, env, clear=True), pytest.raises(ValidationError):
            Settings()

    def test_bucket_name_too_short(self):
        with pytest.raises(ValidationError, match="3-63 characters"):
            ExportSettings(bucket="ex")

    def test_default_tier_must_exist(self):
        with pytest.raises(ValidationError, match="default_tier"):
            RetentionSettings(tier_days={"pro": 90}, default_tier="starter")

    def test_tier_days_must_be_positive(self):
        with pytest.raises(ValidationError, match="at least 1 day"):
            RetentionSettings(tier_days={"starter": 0})

    def test_atomic_required_with_optimistic_mode_rejected(self, minimal_env):
        env = {
            **minimal_env,
            "EXPORTLEDGER_EXPORTS__REQUIRE_ATOMIC_CLAIM": "true",
            "EXPORTLEDGER_EXPORTS__CLAIM_BACKEND": "optimistic",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings()

        with pytest.raises(ConfigValidationError) as exc_info:
            validate_settings(settings)
        assert exc_info.value.field == "exports.claim_backend"

    def test_empty_salt_rejected(self, minimal_env):
        env = {**minimal_env, "EXPORTLEDGER_LEDGER__HASH_SALT": ""}
        with patch.dict(os.environ, env, clear=True):
            settings = Settings()

        with pytest.raises(ConfigValidationError, match="salt"):
            validate_settings(settings)


class TestProductionWarnings:
    """Production without the atomic requirement is allowed but logged."""

    def test_warns_without_require_atomic(self, minimal_env, caplog):
        env = {**minimal_env, "EXPORTLEDGER_ENVIRONMENT": "production"}
        with (
            patch.dict(os.environ, env, clear=True),
            caplog.at_level(logging.WARNING, logger="exportledger.core.config"),
        ):
            settings = Settings()

        assert settings.is_production
        assert any("require_atomic_claim" in r.getMessage() for r in caplog.records)

    def test_no_claim_warning_when_atomic_required(self, minimal_env, caplog):
        env = {
            **minimal_env,
            "EXPORTLEDGER_ENVIRONMENT": "production",
            "EXPORTLEDGER_EXPORTS__REQUIRE_ATOMIC_CLAIM": "true",
            "EXPORTLEDGER_S3__SECURE": "true",
        }
        with (
            patch.dict(os.environ, env, clear=True),
            caplog.at_level(logging.WARNING, logger="exportledger.core.config"),
        ):
            Settings()

        assert not any("require_atomic_claim" in r.getMessage() for r in caplog.records)


class TestSettingsSingleton:
    """Cached accessor behavior."""

    def test_get_settings_is_cached(self, minimal_env):
        with patch.dict(os.environ, minimal_env, clear=True):
            first = get_settings()
            second = get_settings()

        assert first is second

    def test_clear_cache_reloads(self, minimal_env):
        with patch.dict(os.environ, minimal_env, clear=True):
            first = get_settings()
            clear_settings_cache()
            second = get_settings()

        assert first is not second

    def test_invalid_settings_exit(self):
        with patch.dict(os.environ, {}, clear=True), pytest.raises(SystemExit):
            get_settings()

    def test_safe_accessor_returns_none(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_settings_safe() is None

    def test_invalid_settings_logged(self, caplog):
        with patch.dict(os.environ, {}, clear=True), pytest.raises(SystemExit):
            get_settings()

        assert "Invalid worker configuration" in caplog.text
        assert "url" in caplog.text

    def test_startup_summary_has_no_secrets(self, minimal_env):
        with patch.dict(os.environ, minimal_env, clear=True):
            summary = startup_summary(Settings())

        assert summary["claim_backend"] == "auto"
        assert summary["require_atomic_claim"] == "false"
        assert summary["bucket"] == "exports"
        assert "test_secret_key" not in str(summary)

    def test_logging_uses_configured_level(self, minimal_env):
        env = {**minimal_env, "EXPORTLEDGER_LOG_LEVEL": "debug"}
        with patch.dict(os.environ, env, clear=True):
            settings = Settings()

        with patch("exportledger.core.settings.logging.basicConfig") as basic_config:
            configure_logging(settings)

        assert basic_config.call_args.kwargs["level"] == logging.DEBUG


class TestPolicySnapshot:
    """Non-sensitive snapshot and its hash."""

    def test_snapshot_excludes_secrets(self, minimal_env):
        with patch.dict(os.environ, minimal_env, clear=True):
            settings = Settings()

        snapshot = settings.get_policy_snapshot()

        assert snapshot["exports"]["max_concurrent"] == 3
        assert "test_secret_key" not in str(snapshot)
        assert "hash_salt" not in str(snapshot)

    def test_hash_changes_with_policy(self, minimal_env):
        with patch.dict(os.environ, minimal_env, clear=True):
            base = Settings().get_policy_hash()
        env = {**minimal_env, "EXPORTLEDGER_EXPORTS__MAX_FAILURES": "5"}
        with patch.dict(os.environ, env, clear=True):
            changed = Settings().get_policy_hash()

        assert len(base) == 64
        assert base != changed
