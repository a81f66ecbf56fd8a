import decimal
from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from rewards_tracker.models import CostBasisMethod

SECONDS_PER_DAY = 86400


class LedgerSettings(BaseSettings):
    """Core ledger configuration: storage, asset and tax-lot policy."""

    database_url: str = Field(
        "sqlite:///rewards-ledger.db",
        alias="LEDGER_DATABASE_URL",
        description="SQLAlchemy URL of the ledger store"
    )
    asset_symbol: str = Field("SOL", alias="ASSET_SYMBOL", description="Tracked asset symbol")
    reference_currency: str = Field("USD", alias="REFERENCE_CURRENCY", description="Currency for prices and gains")

    # Holding period after which a disposal counts as long-term
    holding_period_seconds: int = Field(
        365 * SECONDS_PER_DAY,
        alias="HOLDING_PERIOD_SECONDS",
        description="Long-term holding period threshold in seconds"
    )

    # Fixed-point policy
    quantity_decimals: int = Field(9, alias="QUANTITY_DECIMALS", description="Decimal places for asset quantities")
    price_decimals: int = Field(8, alias="PRICE_DECIMALS", description="Decimal places for unit prices")
    currency_decimals: int = Field(2, alias="CURRENCY_DECIMALS", description="Decimal places for currency amounts")
    rounding: str = Field("ROUND_HALF_EVEN", alias="ROUNDING_MODE", description="decimal module rounding mode")

    # Lot consumption strategy: FIFO (default), HIFO or SPECIFIC
    lot_strategy: CostBasisMethod = Field(
        CostBasisMethod.FIFO,
        alias="LOT_STRATEGY",
        description="Default lot selection method"
    )

    balance_tolerance: Decimal = Field(
        Decimal("0"),
        alias="BALANCE_TOLERANCE",
        description="Allowed difference between ledger and on-chain balances"
    )
    verify_balances: bool = Field(False, alias="VERIFY_BALANCES", description="Verify balances after each run")
    max_workers: int = Field(4, alias="RECONCILE_WORKERS", description="Accounts reconciled concurrently")

    @field_validator("rounding")
    @classmethod
    def _known_rounding_mode(cls, value: str) -> str:
        value = value.upper()
        if not value.startswith("ROUND_") or not hasattr(decimal, value):
            raise ValueError(f"Unknown rounding mode: {value}")
        return value

    @field_validator("lot_strategy", mode="before")
    @classmethod
    def _parse_lot_strategy(cls, value):
        if isinstance(value, str):
            return CostBasisMethod[value.upper()]
        return value


class ProviderSettings(BaseSettings):
    """Timeouts and retry budget for price feed, chain and orchestrator calls."""

    request_timeout: float = Field(10.0, alias="PROVIDER_TIMEOUT_SECONDS", description="Per-request timeout")
    max_tries: int = Field(3, alias="PROVIDER_MAX_TRIES", description="Attempts before a call is reported unavailable")
    backoff_factor: float = Field(1.0, alias="PROVIDER_BACKOFF_FACTOR", description="Exponential backoff factor")
    backoff_max: float = Field(30.0, alias="PROVIDER_BACKOFF_MAX", description="Longest wait between attempts")


class SweepSettings(BaseSettings):
    """Sweep-stake configuration."""

    min_sweep_quantity: Decimal = Field(
        Decimal("1"),
        alias="SWEEP_MIN_QUANTITY",
        description="Minimum harvestable quantity before a sweep starts"
    )
    retain_quantity: Decimal = Field(
        Decimal("0"),
        alias="SWEEP_RETAIN_QUANTITY",
        description="Quantity left behind in the source account (rent reserve)"
    )
    max_attempts: int = Field(5, alias="SWEEP_MAX_ATTEMPTS", description="Attempts per step before a task fails")
    backoff_factor: float = Field(1.0, alias="SWEEP_BACKOFF_FACTOR", description="Exponential backoff factor")
    backoff_max: float = Field(60.0, alias="SWEEP_BACKOFF_MAX", description="Longest wait between attempts")


class CoinGeckoSettings(BaseSettings):
    """CoinGecko API configuration."""

    api_key: Optional[str] = Field(None, alias="COINGECKO_API_KEY", description="CoinGecko demo/pro API key")
    base_url: str = Field(
        "https://api.coingecko.com/api/v3",
        alias="COINGECKO_BASE_URL",
        description="CoinGecko API base URL"
    )
    coin_id: str = Field("solana", alias="COINGECKO_COIN_ID", description="CoinGecko id of the tracked asset")


class NotifierSettings(BaseSettings):
    """Slack notification configuration."""

    slack_webhook: Optional[str] = Field(None, alias="SLACK_WEBHOOK", description="Slack incoming webhook URL")


class SheetsSettings(BaseSettings):
    """Google Sheets report export configuration."""

    report_sheet_id: Optional[str] = Field(None, alias="REPORT_SHEET_ID", description="Google Sheet ID for reports")
    google_credentials: Optional[str] = Field(
        None,
        alias="REPORT_GOOGLE_CREDENTIALS",
        description="Path to Google service account credentials"
    )
