"""Settings loading from the environment."""

import pytest

from olakz_auth.config import Settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRETS_DIR", str(tmp_path / "secrets"))
    for name in ("JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET", "JWT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_jwt_secret_does_not_configure_token_secrets(clean_env):
    clean_env.setenv("JWT_SECRET", "shared-secret-value-for-both-token-kinds")
    settings = Settings.from_env()
    assert settings.jwt_access_secret != "shared-secret-value-for-both-token-kinds"
    assert settings.jwt_refresh_secret != "shared-secret-value-for-both-token-kinds:refresh"
    assert settings.jwt_access_secret != settings.jwt_refresh_secret


def test_explicit_token_secrets_are_used(clean_env):
    clean_env.setenv("JWT_ACCESS_SECRET", "access-secret-value-0123456789abcdef")
    clean_env.setenv("JWT_REFRESH_SECRET", "refresh-secret-value-0123456789abcdef")
    settings = Settings.from_env()
    assert settings.jwt_access_secret == "access-secret-value-0123456789abcdef"
    assert settings.jwt_refresh_secret == "refresh-secret-value-0123456789abcdef"


def test_identical_token_secrets_are_rejected():
    with pytest.raises(ValueError):
        Settings(
            jwt_access_secret="same-secret-value-0123456789abcdef",
            jwt_refresh_secret="same-secret-value-0123456789abcdef",
            otp_secret="otp-secret",
        )


def test_jwks_refetch_cooldown_is_configurable(clean_env):
    clean_env.setenv("JWKS_MIN_REFETCH_SECONDS", "120")
    assert Settings.from_env().jwks_min_refetch_seconds == 120
