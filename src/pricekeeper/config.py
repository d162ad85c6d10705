"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from pricekeeper.exceptions import ConfigurationError, ValidationError

HistoricalPeriod = Literal["3M", "6M", "1Y", "2Y", "5Y", "ALL"]

# Lookback in calendar days for each supported history period
PERIOD_DAYS: dict[str, int] = {
    "3M": 90,
    "6M": 180,
    "1Y": 365,
    "2Y": 730,
    "5Y": 1825,
    "ALL": 3650,  # 10 years keeps daily granularity on most sources
}


def period_to_days(period: str) -> int:
    """Translate a history period name (e.g. "1Y") to a lookback in days.

    Raises ValidationError for unknown period names.
    """
    try:
        return PERIOD_DAYS[period.upper()]
    except (KeyError, AttributeError):
        raise ValidationError(
            f"Unknown historical period {period!r}; expected one of {sorted(PERIOD_DAYS)}"
        ) from None


class MarketDataSettings(BaseSettings):
    """Upstream market data source (any ccxt exchange)."""

    model_config = SettingsConfigDict(env_prefix="MARKET_")

    exchange_id: str = "bybit"
    symbol: str = "BTC/USDT"
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    request_timeout_seconds: float = 10.0
    max_candles_per_request: int = 1000  # source cap on one daily window
    chunk_overlap_days: int = 1


class HistoricalDataSettings(BaseSettings):
    """Daily history storage and reconciliation.

    All fields configurable via HISTORICAL_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="HISTORICAL_")

    db_path: str = "data/prices.db"
    period: HistoricalPeriod = "1Y"
    max_retries: int = 3
    retry_base_delay: float = 1.0
    fetch_batch_delay: float = 0.1
    reconcile_interval_seconds: int = 24 * 60 * 60
    retention_days: int = 0  # 0 keeps everything
    max_reported_gaps: int = 10
    freshness_max_age_days: int = 2


class PriceSettings(BaseSettings):
    """Live price polling and current-price cache."""

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    cache_ttl_seconds: float = 30.0
    refresh_interval_seconds: int = 60 * 60
    fallback_price: Decimal = Decimal("105000")
    intraday_retention_hours: int = 24


class ExchangeRateSettings(BaseSettings):
    """Currency exchange rate source and cache."""

    model_config = SettingsConfigDict(env_prefix="FX_")

    api_base_url: str = "https://api.exchangerate-api.com/v4/latest"
    ttl_hours: float = 4.0
    timeout_seconds: float = 10.0
    pivot_currency: str = "USD"
    tracked_currencies: list[str] = [
        "USD", "EUR", "PLN", "GBP", "CAD", "AUD", "JPY", "CHF", "SEK", "NOK",
    ]


class SchedulerSettings(BaseSettings):
    """Initializer retry budget for the store connectivity check."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    connect_max_attempts: int = 5
    connect_base_delay: float = 0.5
    connect_max_delay: float = 8.0


class PortfolioSettings(BaseSettings):
    """Holdings used for the portfolio valuation summary."""

    model_config = SettingsConfigDict(env_prefix="PORTFOLIO_")

    holdings: Decimal = Decimal("0")
    total_invested: Decimal = Decimal("0")  # in main_currency
    main_currency: str = "USD"
    secondary_currency: str = "EUR"


class ApiSettings(BaseSettings):
    """HTTP trigger surface."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    market: MarketDataSettings = MarketDataSettings()
    historical: HistoricalDataSettings = HistoricalDataSettings()
    price: PriceSettings = PriceSettings()
    fx: ExchangeRateSettings = ExchangeRateSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    portfolio: PortfolioSettings = PortfolioSettings()
    api: ApiSettings = ApiSettings()

    def validate_required(self) -> None:
        """Check values the pipeline cannot run without.

        Raises ConfigurationError naming every problem found.
        """
        problems: list[str] = []

        if not self.market.exchange_id.strip():
            problems.append("market.exchange_id is empty")
        if "/" not in self.market.symbol:
            problems.append(f"market.symbol {self.market.symbol!r} is not BASE/QUOTE")
        if self.market.request_timeout_seconds <= 0:
            problems.append("market.request_timeout_seconds must be positive")
        if self.market.max_candles_per_request <= self.market.chunk_overlap_days:
            problems.append("market.max_candles_per_request must exceed chunk_overlap_days")
        if not self.historical.db_path.strip():
            problems.append("historical.db_path is empty")
        if self.historical.reconcile_interval_seconds <= 0:
            problems.append("historical.reconcile_interval_seconds must be positive")
        if self.historical.retention_days < 0:
            problems.append("historical.retention_days must not be negative")
        if self.price.refresh_interval_seconds <= 0:
            problems.append("price.refresh_interval_seconds must be positive")
        if self.price.fallback_price <= 0:
            problems.append("price.fallback_price must be positive")
        if self.fx.ttl_hours <= 0:
            problems.append("fx.ttl_hours must be positive")

        if problems:
            raise ConfigurationError("; ".join(problems))
