"""Tests for environment-driven settings and log helpers."""

import pytest
from pydantic import ValidationError

from consentmanager.config import Settings, get_settings, reset_settings_cache
from consentmanager.logging import _redact_pii, mask_phone, sanitize_error_message


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 32)

        assert settings.otp_expiry_minutes == 5
        assert settings.otp_expiry_seconds == 300
        assert settings.lockout_max_attempts == 5
        assert settings.lockout_cool_off_minutes == 480
        assert settings.blacklist_key("abc") == "blacklist:abc"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OTP_EXPIRY_MINUTES", "7")
        monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("BLACKLIST_NAMESPACE", "denied")

        settings = Settings.from_env()

        assert settings.otp_expiry_seconds == 420
        assert settings.lockout_max_attempts == 3
        assert settings.blacklist_key("abc") == "denied:abc"

    def test_blank_redis_url_disables_redis(self):
        assert Settings(jwt_secret="x" * 32, redis_url="").redis_url is None

    def test_missing_jwt_secret_is_generated(self):
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert first.jwt_secret
        assert first.jwt_secret != second.jwt_secret

    @pytest.mark.parametrize(
        "field", ["otp_expiry_minutes", "lockout_max_attempts", "access_token_ttl_minutes"]
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 32, **{field: 0})

    def test_blacklist_format_requires_token(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 32, blacklist_format="{namespace}")

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("OTP_EXPIRY_MINUTES", "9")
        reset_settings_cache()

        assert get_settings().otp_expiry_minutes == 9


class TestLogHelpers:
    def test_mask_phone(self):
        assert mask_phone("9876543210") == "XXXXXX3210"
        assert mask_phone("321") == "321"
        assert mask_phone("") == ""

    def test_redact_pii(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "otp_sent", "phone": "9876543210", "otp": "1234", "username": "alice"},
        )

        assert event["phone"] == "98***10"
        assert event["otp"] == "***"
        assert event["username"] == "alice"

    def test_redact_pii_matches_whole_key_names(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "runtime_initialized",
                "otp_service_url": "http://otp.test",
                "token_type": "refresh",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9",
                "jwt_secret": "super-secret-value",
            },
        )

        assert event["otp_service_url"] == "http://otp.test"
        assert event["token_type"] == "refresh"
        assert event["refresh_token"] == "ey***J9"
        assert event["jwt_secret"] == "su***ue"

    def test_sanitize_error_message(self):
        message = sanitize_error_message("password=hunter2 failed")

        assert "hunter2" not in message
        assert sanitize_error_message("") == "An error occurred"
