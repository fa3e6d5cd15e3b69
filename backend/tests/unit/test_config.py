"""
Unit Tests for Configuration
"""
from decimal import Decimal

import pytest

from voipcore.core.config import ConfigManager, Settings
from voipcore.core.validation import ProviderValidator, validate_providers_on_startup


class TestConfigManager:
    """Tests for YAML configuration"""

    def test_dotted_lookup(self):
        config = ConfigManager("development")

        assert config.get("webhooks.unknown_call_attempts") == 3
        assert config.get("dialer.wrap_up_seconds") == 15
        assert config.get("missing.key", "default") == "default"

    def test_fallback_tariff_from_yaml(self):
        tariff = ConfigManager("development").fallback_tariff()

        assert tariff.rate_per_minute == Decimal("0.15")
        assert tariff.increment_seconds == 6
        assert tariff.destination_type == "fallback"

    def test_fallback_tariff_disabled_by_null(self):
        config = ConfigManager("development")
        config._config["billing"]["fallback_tariff"] = None

        assert config.fallback_tariff() is None

    def test_env_substitution(self, monkeypatch):
        monkeypatch.setenv("VOIP_TEST_VALUE", "from-env")
        monkeypatch.delenv("VOIP_TEST_MISSING", raising=False)
        config = ConfigManager("development")

        expanded = config._expand_env({
            "value": "${VOIP_TEST_VALUE}",
            "items": ["${VOIP_TEST_VALUE}", "plain"],
            "defaulted": "${VOIP_TEST_MISSING:-fallback}",
            "unset": "${VOIP_TEST_MISSING}",
        })

        assert expanded == {
            "value": "from-env",
            "items": ["from-env", "plain"],
            "defaulted": "fallback",
            "unset": "${VOIP_TEST_MISSING}",
        }

    def test_environment_file_overrides_defaults(self, tmp_path):
        (tmp_path / "default.yaml").write_text(
            "dialer:\n  wrap_up_seconds: 15\n  inter_call_delay_seconds: 2\n"
        )
        (tmp_path / "staging.yaml").write_text("dialer:\n  wrap_up_seconds: 30\n")

        config = ConfigManager("staging", config_dir=tmp_path)

        assert config.section("dialer") == {"wrap_up_seconds": 30, "inter_call_delay_seconds": 2}
        assert config.section("missing") == {}


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)
        settings = Settings(_env_file=None)

        assert settings.storage_backend == "memory"
        assert settings.api_prefix == "/api/v1"
        assert settings.twilio_validate_signature is False

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TELEPHONY_PROVIDER", "telnyx")
        monkeypatch.setenv("REALTIME_ENABLED", "true")

        settings = Settings(_env_file=None)

        assert settings.telephony_provider == "telnyx"
        assert settings.realtime_enabled is True


class TestProviderValidator:

    def test_missing_selected_provider_is_error(self, monkeypatch):
        monkeypatch.setenv("TELEPHONY_PROVIDER", "telnyx")
        monkeypatch.delenv("TELNYX_API_KEY", raising=False)
        monkeypatch.delenv("TELNYX_CONNECTION_ID", raising=False)

        all_valid, results = ProviderValidator().validate_all()

        assert all_valid is False
        assert any(r.setting == "TELNYX_API_KEY" and not r.is_valid for r in results)

    def test_unselected_provider_not_checked(self, monkeypatch):
        monkeypatch.setenv("TELEPHONY_PROVIDER", "twilio")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)

        all_valid, results = ProviderValidator().validate_all()

        assert all_valid is True
        assert not any(r.provider == "telnyx" for r in results)

    def test_strict_mode_fails_on_warnings(self, monkeypatch):
        monkeypatch.setenv("TELEPHONY_PROVIDER", "twilio")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)

        all_valid, _ = ProviderValidator(strict=True).validate_all()

        assert all_valid is False

    def test_startup_raises_with_missing_settings(self, monkeypatch):
        monkeypatch.setenv("TELEPHONY_PROVIDER", "telnyx")
        monkeypatch.setenv("TELNYX_API_KEY", "KEY")
        monkeypatch.delenv("TELNYX_CONNECTION_ID", raising=False)

        with pytest.raises(RuntimeError, match="TELNYX_CONNECTION_ID"):
            validate_providers_on_startup()

    def test_startup_passes_with_only_warnings(self, monkeypatch):
        monkeypatch.setenv("TELEPHONY_PROVIDER", "twilio")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)

        validate_providers_on_startup(strict=False)

        with pytest.raises(RuntimeError, match="STORAGE_BACKEND"):
            validate_providers_on_startup(strict=True)
