import pytest

from alphfolio.config import PricingSettings, load_settings


def test_defaults():
    settings = PricingSettings()
    assert settings.price_cache_ttl == 300.0
    assert settings.blockchain == "alephium"
    assert settings.mobula_api_key is None


def test_toml_then_environment(tmp_path):
    path = tmp_path / "alphfolio.toml"
    path.write_text(
        "[pricing]\n"
        'mobula_base_url = "https://mobula.example/api/1/"\n'
        "price_cache_ttl = 120\n"
        "retry_attempts = 5\n"
    )

    settings = load_settings(path, environ={"PRICE_CACHE_TTL": "90", "MOBULA_API_KEY": "  "})

    assert settings.mobula_base_url == "https://mobula.example/api/1"
    assert settings.price_cache_ttl == 90.0
    assert settings.retry_attempts == 5
    assert settings.mobula_api_key is None


def test_config_path_from_environment(tmp_path):
    path = tmp_path / "flat.toml"
    path.write_text("aggregate_cooldown = 30\nprovider_cooldown = false\n")

    settings = load_settings(environ={"ALPHFOLIO_CONFIG": str(path)})

    assert settings.aggregate_cooldown == 30.0
    assert settings.provider_cooldown is False


@pytest.mark.parametrize(
    "env",
    [
        {"PRICE_CACHE_TTL": "0"},
        {"PRICE_RETRY_ATTEMPTS": "0"},
        {"PRICE_RETRY_BACKOFF": "-1"},
        {"HTTP_TIMEOUT_SEC": "soon"},
        {"AGGREGATE_COOLDOWN": "-5"},
    ],
)
def test_invalid_values_raise_value_error(env):
    with pytest.raises(ValueError):
        load_settings(environ=env)


def test_settings_are_frozen():
    settings = PricingSettings()
    with pytest.raises(ValueError):
        settings.price_cache_ttl = 1.0
