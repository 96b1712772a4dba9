import pytest
from pydantic import ValidationError

from walletauth.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def fresh_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


class TestSettingsDefaults:
    def test_token_lifetimes(self):
        settings = Settings()

        assert settings.access_token_ttl_seconds == 3 * 60 * 60
        assert settings.refresh_token_ttl_seconds == 90 * 24 * 60 * 60
        assert settings.nonce_ttl_seconds == 600

    def test_cookie_contract(self):
        settings = Settings()

        assert settings.access_cookie_name == "access_token"
        assert settings.refresh_cookie_path == "/auth/refresh"
        assert settings.cookie_secure is True

    def test_supported_chains(self):
        assert Settings().supported_chain_ids == [50104, 531050104]


class TestValidation:
    def test_algorithm_is_normalized(self):
        assert Settings(jwt_algorithm="es256").jwt_algorithm == "ES256"

    @pytest.mark.parametrize("algorithm", ["HS256", "none", "EdDSA"])
    def test_symmetric_and_unknown_algorithms_rejected(self, algorithm):
        with pytest.raises(ValidationError):
            Settings(jwt_algorithm=algorithm)

    def test_relative_refresh_cookie_path_rejected(self):
        with pytest.raises(ValidationError):
            Settings(refresh_cookie_path="auth/refresh")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(access_token_ttl_seconds=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, fresh_settings):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "900")
        monkeypatch.setenv("ALLOWED_AUDIENCES", "a.example, b.example,")
        monkeypatch.setenv("SUPPORTED_CHAIN_IDS", "50104")
        monkeypatch.setenv("COOKIE_SECURE", "false")

        settings = get_settings()

        assert settings.access_token_ttl_seconds == 900
        assert settings.allowed_audiences == ["a.example", "b.example"]
        assert settings.supported_chain_ids == [50104]
        assert settings.cookie_secure is False

    def test_reads_dotenv_file(self, monkeypatch, tmp_path, fresh_settings):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("REFRESH_KEY_ID", raising=False)
        (tmp_path / ".env").write_text("REFRESH_KEY_ID=refresh-2024\n")

        assert Settings.from_env().refresh_key_id == "refresh-2024"

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path, fresh_settings):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("JWT_ISSUER=from-file\n")
        monkeypatch.setenv("JWT_ISSUER", "from-env")

        assert Settings.from_env().jwt_issuer == "from-env"

    def test_settings_are_cached_until_reset(self, monkeypatch, fresh_settings):
        first = get_settings()
        monkeypatch.setenv("JWT_ISSUER", "changed")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().jwt_issuer == "changed"
