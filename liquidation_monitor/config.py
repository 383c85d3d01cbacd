from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from typing import Dict, List, Literal, Self


# allMids carries no stablecoin mids: USDC, USDT and USDe get no live quote from
# the default feed, and borrowers holding them stay INDETERMINATE
DEFAULT_WATCH_SYMBOLS = ["ETH", "BTC", "USDC", "USDT", "HYPE", "USDe"]

# Explicit fallback quotes, only ever surfaced as FALLBACK_DEFAULT prices
DEFAULT_PRICES = {
    "ETH": 3000.0,
    "BTC": 65000.0,
    "USDC": 1.0,
    "USDT": 1.0,
    "HYPE": 2.5,
    "USDe": 1.0,
}


class Settings(BaseSettings):
    # Price feed
    stream_url: str = Field(
        default="wss://api.hyperliquid.xyz/ws", description="Streaming price channel URL"
    )
    poll_url: str = Field(
        default="https://api.hyperliquid.xyz/info", description="Polling price endpoint URL"
    )
    watch_symbols: List[str] = Field(
        default_factory=lambda: list(DEFAULT_WATCH_SYMBOLS),
        description=(
            "Symbols subscribed on the streaming channel. allMids quotes no stablecoins, "
            "so USDC/USDT/USDe debt stays unpriced (INDETERMINATE) unless another feed "
            "supplies them"
        ),
    )
    poll_interval_seconds: float = Field(
        default=10.0, description="Interval between fallback price polls"
    )
    stream_reconnect_delay_seconds: float = Field(
        default=5.0, description="Delay before reconnecting a dropped price stream"
    )
    fetch_timeout_seconds: float = Field(
        default=8.0, description="Timeout for price polls and borrower snapshot fetches"
    )
    default_prices: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_PRICES),
        description=(
            "Hardcoded prices used only when no live quote was ever received. They are "
            "tagged FALLBACK_DEFAULT and never used by the scanner"
        ),
    )

    # Scanner
    scan_interval_seconds: float = Field(
        default=30.0, description="Interval between liquidation scans"
    )
    max_liquidation_fraction: float = Field(
        default=0.5, description="Share of a debt position that may be liquidated at once"
    )
    liquidation_bonus_rate: float = Field(
        default=0.05, description="Bonus paid to the liquidator (0.05 = 5%)"
    )
    warning_health_factor_threshold: float = Field(
        default=1.3, description="Health factor below which a borrower is flagged as warning"
    )
    critical_health_factor_threshold: float = Field(
        default=1.1, description="Health factor below which a borrower is flagged as critical"
    )

    # Borrower snapshots
    snapshot_source: Literal["demo", "http", "static"] = Field(
        default="demo", description="Borrower snapshot source implementation"
    )
    snapshot_url: str = Field(
        default="http://localhost:9000", description="Base URL of the borrower indexer (http source)"
    )
    demo_seed: int | None = Field(
        default=None, description="Seed for the demo borrower generator"
    )
    snapshot_file: str | None = Field(
        default=None, description="JSON borrower snapshot in the indexer format (static source)"
    )

    # Execution
    execution_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single execution backend call"
    )
    revalidate_before_execution: bool = Field(
        default=False, description="Re-run the health factor check before executing"
    )
    simulated_success_rate: float = Field(
        default=0.8, description="Success probability of the simulated execution backend"
    )
    simulated_latency_seconds: float = Field(
        default=2.0, description="Latency of the simulated execution backend"
    )
    auto_liquidation_enabled: bool = Field(
        default=False, description="Execute profitable opportunities automatically after each scan"
    )
    min_profit_threshold_usd: float = Field(
        default=100.0, description="Minimum estimated profit for automatic execution"
    )

    # HTTP interface
    api_host: str = Field(default="0.0.0.0", description="Bind address of the HTTP interface")
    api_port: int = Field(default=8080, description="Port of the HTTP interface and metrics")

    @field_validator(
        "poll_interval_seconds",
        "stream_reconnect_delay_seconds",
        "fetch_timeout_seconds",
        "scan_interval_seconds",
        "execution_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_liquidation_fraction")
    @classmethod
    def validate_fraction(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("must be in (0, 1]")
        return value

    @field_validator("liquidation_bonus_rate", "min_profit_threshold_usd", "simulated_latency_seconds")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("simulated_success_rate")
    @classmethod
    def validate_probability(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("must be in [0, 1]")
        return value

    @model_validator(mode="after")
    def validate_consistency(self) -> Self:
        """Cross-field checks: threshold order and static source file."""
        if self.critical_health_factor_threshold > self.warning_health_factor_threshold:
            raise ValueError(
                "critical_health_factor_threshold must not exceed warning_health_factor_threshold"
            )
        if self.snapshot_source == "static" and not self.snapshot_file:
            raise ValueError("snapshot_file is required for the static snapshot source")
        return self

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
