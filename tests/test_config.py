import pytest

from apitemplate.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_secrets_required_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(test_mode=False, jwt_access_secret=None, jwt_refresh_secret=None)

    def test_secrets_generated_in_test_mode(self):
        settings = Settings(test_mode=True)
        assert settings.jwt_access_secret
        assert settings.jwt_refresh_secret
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_secrets_must_differ(self):
        with pytest.raises(ValueError):
            Settings(jwt_access_secret="same", jwt_refresh_secret="same")

    def test_lifetimes_in_seconds(self):
        settings = Settings(
            jwt_access_secret="a",
            jwt_refresh_secret="b",
            access_token_expire_minutes=15,
            refresh_token_expire_hours=72,
            presence_ttl_minutes=5,
        )
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 259200
        assert settings.presence_ttl_seconds == 300

    def test_default_page_size_clamped(self):
        settings = Settings(
            jwt_access_secret="a", jwt_refresh_secret="b", default_page_size=50, max_page_size=20
        )
        assert settings.default_page_size == 20

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_EXPIRE_MIN", "30")
        monkeypatch.setenv("REFRESH_TOKEN_EXPIRE_HOUR", "24")
        monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("DEFAULT_LOCALE", "ES")

        settings = Settings.from_env()

        assert settings.access_token_expire_minutes == 30
        assert settings.refresh_token_expire_hours == 24
        assert settings.rotate_refresh_tokens is True
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.default_locale == "es"

    def test_get_settings_is_cached(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("PORT", "9999")
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().port == 9999
        reset_settings_cache()
