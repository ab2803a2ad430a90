"""Runtime settings for the pricing and portfolio services."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

DEFAULT_MOBULA_URL = "https://api.mobula.io/api/1"
DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3"

# environment variable -> settings field
ENV_VARS: Dict[str, str] = {
    "MOBULA_BASE_URL": "mobula_base_url",
    "MOBULA_API_KEY": "mobula_api_key",
    "COINGECKO_BASE_URL": "coingecko_base_url",
    "PRICE_BLOCKCHAIN": "blockchain",
    "PRICE_CACHE_TTL": "price_cache_ttl",
    "PRICE_ESTIMATE_TTL": "estimate_ttl",
    "PRICE_RETRY_ATTEMPTS": "retry_attempts",
    "PRICE_RETRY_BACKOFF": "retry_backoff",
    "PRICE_PROVIDER_COOLDOWN": "provider_cooldown",
    "HTTP_TIMEOUT_SEC": "http_timeout",
    "LP_CACHE_TTL": "lp_cache_ttl",
    "AGGREGATE_COOLDOWN": "aggregate_cooldown",
}

CONFIG_PATH_ENV = "ALPHFOLIO_CONFIG"


class PricingSettings(BaseModel):
    """Schema for pricing/portfolio configuration."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    mobula_base_url: str = DEFAULT_MOBULA_URL
    mobula_api_key: str | None = None
    coingecko_base_url: str = DEFAULT_COINGECKO_URL
    blockchain: str = "alephium"
    native_symbol: str = "ALPH"
    native_decimals: int = 18

    price_cache_ttl: float = 300.0
    estimate_ttl: float = 60.0
    lp_cache_ttl: float = 300.0
    lp_detection_ttl: float = 600.0
    lp_unit_decimals: int = 18

    http_timeout: float = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    mobula_batch_limit: int = 100
    provider_cooldown: bool = True

    aggregate_cooldown: float = 10.0
    aggregate_backoff_factor: float = 1.5
    aggregate_max_backoff: float = 8.0

    balance_cache_ttl: float = 600.0
    tokens_cache_ttl: float = 1200.0

    @field_validator(
        "price_cache_ttl",
        "estimate_ttl",
        "lp_cache_ttl",
        "lp_detection_ttl",
        "http_timeout",
        "aggregate_cooldown",
        "balance_cache_ttl",
        "tokens_cache_ttl",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("retry_attempts", "mobula_batch_limit")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("retry_backoff")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("aggregate_backoff_factor", "aggregate_max_backoff")
    @classmethod
    def _multiplier(cls, value: float) -> float:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("mobula_base_url", "coingecko_base_url", "blockchain", "native_symbol")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value.rstrip("/")

    @field_validator("mobula_api_key")
    @classmethod
    def _blank_key_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def _read_toml(path: Path) -> Dict[str, Any]:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    section = data.get("pricing", data)
    if not isinstance(section, dict):
        raise ValueError(f"{path}: [pricing] must be a table")
    return dict(section)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, field in ENV_VARS.items():
        raw = environ.get(name)
        if raw is None or raw.strip() == "":
            continue
        overrides[field] = raw.strip()
    return overrides


def load_settings(
    path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> PricingSettings:
    """Build :class:`PricingSettings` from defaults, a TOML file and the environment.

    Later sources win: defaults < ``[pricing]`` table of the TOML file <
    environment variables listed in :data:`ENV_VARS`.  Validation problems
    are raised as ``ValueError``.
    """

    env = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    config_path = path or env.get(CONFIG_PATH_ENV)
    if config_path:
        data.update(_read_toml(Path(config_path)))
    data.update(_env_overrides(env))
    try:
        return PricingSettings(**data)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


__all__ = ["ENV_VARS", "PricingSettings", "load_settings"]
