from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    database_echo: bool = False

    # Internal API security
    checkout_api_key: str = ""
    admin_api_key: str = ""

    # Loyalty accrual / redemption rules
    loyalty_earn_points_per_dollar: dict[str, int] = Field(
        default_factory=lambda: {"USD": 10, "CAD": 10}
    )
    loyalty_redeem_points_per_dollar: int = 100
    loyalty_redeem_min_points: int = 100
    loyalty_redeem_increment: int = 100
    loyalty_max_adjustment_points: int = 1_000_000
    loyalty_note_max_length: int = 500
    loyalty_history_limit: int = 200
    loyalty_overview_limit: int = 50
    loyalty_redeem_conflict_attempts: int = 3

    @field_validator("loyalty_earn_points_per_dollar", mode="before")
    @classmethod
    def _parse_earn_rates(cls, value: object) -> dict[str, int]:
        if value is None:
            return {}
        if isinstance(value, str):
            rates: dict[str, int] = {}
            for pair in value.split(","):
                if "=" not in pair:
                    continue
                currency, rate = pair.split("=", 1)
                if currency.strip():
                    rates[currency.strip().upper()] = int(rate.strip())
            return rates
        if isinstance(value, dict):
            return {str(key).upper(): int(rate) for key, rate in value.items()}
        return {}

    # Sinalite print vendor
    sinalite_base_url: str = "https://liveapi.sinalite.com"
    sinalite_auth_url: str | None = None
    sinalite_audience: str = "https://apiconnect.sinalite.com"
    sinalite_client_id: str = ""
    sinalite_client_secret: str = ""
    sinalite_timeout_seconds: float = 25.0
    sinalite_max_attempts: int = 5
    sinalite_backoff_base_seconds: float = 0.8
    sinalite_token_default_ttl_seconds: int = 1200
    sinalite_token_refresh_margin_seconds: int = 60

    # Tracing
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
