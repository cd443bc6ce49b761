import pytest
from pydantic import ValidationError

from authkeep.config import (
    DEV_JWT_SECRET,
    PASSWORD_HASH_COST_DEFAULT,
    Environment,
    Settings,
    get_settings,
    reset_settings_cache,
)


def test_production_requires_secrets():
    with pytest.raises(ValidationError) as exc:
        Settings(environment="production", jwt_secret="", database_url="", redis_url="")

    message = str(exc.value)
    assert "JWT_SECRET" in message
    assert "DATABASE_URL" in message
    assert "REDIS_URL" in message


def test_production_with_secrets_is_accepted():
    settings = Settings(
        environment="PRODUCTION",
        jwt_secret="s3cret",
        database_url="postgresql://db/auth",
        redis_url="redis://cache:6379/0",
    )

    assert settings.environment == Environment.PRODUCTION
    assert settings.is_production


def test_development_falls_back_to_dev_secret():
    settings = Settings(environment="development", jwt_secret=None)

    assert settings.jwt_secret == DEV_JWT_SECRET
    assert not settings.is_production


@pytest.mark.parametrize("cost", [1, 11, 0])
def test_hash_cost_out_of_range_uses_default(cost):
    assert Settings(password_hash_cost=cost).password_hash_cost == PASSWORD_HASH_COST_DEFAULT


def test_defaults():
    settings = Settings(jwt_secret="x")

    assert settings.port == 8081
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.password_reset_ttl_minutes == 60
    assert settings.email_verification_ttl_minutes == 24 * 60
    assert settings.rate_limit_per_minute == 20


def test_cors_origin_list_splits_and_trims():
    settings = Settings(jwt_secret="x", cors_origins="https://a.example, https://b.example ,")

    assert settings.cors_origin_list == ["https://a.example", "https://b.example"]


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "7")
    reset_settings_cache()

    settings = get_settings()

    assert settings.access_token_ttl_minutes == 5
    assert settings.rate_limit_per_minute == 7
    assert get_settings() is settings
    reset_settings_cache()
