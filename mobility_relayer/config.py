"""
Configuration for the Mobility relayer.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Esplora-compatible explorer per Bitcoin network
DEFAULT_BITCOIN_API_URLS = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
}

DEFAULT_FEE_API_URLS = {
    "mainnet": "https://mempool.space/api/v1/fees/recommended",
    "testnet": "https://mempool.space/testnet/api/v1/fees/recommended",
}

DEFAULT_PACKAGE_ID = "0x58fd4af89d8481a971d9458e5410e8952dfbf98f9105060c654757d744efd033"


class Settings(BaseSettings):
    """
    Relayer configuration settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # API Server
    host: str = Field(default="127.0.0.1", description="API host", alias="HOST")
    port: int = Field(default=3000, description="API port", validation_alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="development",
        description="Runtime environment; error detail is hidden in production",
    )
    allowed_origins: list[str] = Field(
        default=["*"],
        description="CORS allowed origins",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Minimum log level")
    log_json: Optional[bool] = Field(
        default=None,
        description="Render logs as JSON (defaults to true in production)",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./relayer.db",
        description="SQLAlchemy database URL (sqlite:///... or postgresql://...)",
    )

    # Bitcoin
    bitcoin_network: Literal["testnet", "mainnet"] = Field(
        default="testnet", description="Bitcoin network"
    )
    bitcoin_api_url: Optional[str] = Field(
        default=None, description="Esplora API base URL (defaults per network)"
    )
    fee_api_url: Optional[str] = Field(
        default=None, description="Recommended-fees endpoint (defaults per network)"
    )
    fee_tier: str = Field(
        default="hourFee",
        description="Fee tier: fastestFee, halfHourFee, hourFee, economyFee or minimumFee",
    )
    default_fee_rate: int = Field(
        default=10, ge=1, description="Fallback fee rate in sat/byte"
    )
    master_bitcoin_private_key: str = Field(
        default="", description="WIF private key of the relayer wallet"
    )
    deposit_address: Optional[str] = Field(
        default=None,
        description="Custody address deposits must pay (defaults to the wallet address)",
    )
    min_confirmations: int = Field(
        default=2, ge=1, description="Confirmations required for a deposit"
    )
    utxo_cache_ttl_seconds: float = Field(default=60.0, description="UTXO cache lifetime")
    balance_safety_multiplier: float = Field(
        default=1.2, ge=1.0, description="Required balance as a multiple of the payout"
    )
    min_withdrawal_sats: int = Field(default=10_000, description="Smallest payout")
    max_withdrawal_sats: int = Field(
        default=1_000_000_000, description="Largest payout and largest accepted event amount"
    )

    # Sui
    sui_network: str = Field(default="testnet", description="Sui network name")
    sui_rpc_url: Optional[str] = Field(
        default=None, description="Sui fullnode JSON-RPC URL (defaults per network)"
    )
    relayer_private_key: str = Field(
        default="", description="Relayer Sui key (base64 or suiprivkey1...)"
    )
    package_id: str = Field(default=DEFAULT_PACKAGE_ID, description="Move package id")
    module_name: str = Field(default="attest_btc_deposit", description="Move module name")
    relayer_registry_id: Optional[str] = Field(
        default=None, description="RelayerRegistry object id"
    )
    witness_registry_id: Optional[str] = Field(
        default=None, description="WitnessRegistry object id"
    )
    sui_gas_budget: int = Field(default=50_000_000, description="Gas budget in MIST")

    # Withdrawals
    withdrawal_attestation_threshold: int = Field(
        default=1, ge=1, description="Attestations required before payout"
    )
    payout_interval_seconds: float = Field(default=30.0, description="Payout scan period")

    # Event listener
    reset_event_cursor: bool = Field(
        default=False, description="Delete the persisted event cursor on startup"
    )
    event_poll_interval_seconds: float = Field(default=5.0, description="Base poll interval")
    event_max_poll_interval_seconds: float = Field(
        default=30.0, description="Poll interval cap while idle"
    )
    event_max_backoff_seconds: float = Field(
        default=120.0, description="Backoff cap after repeated failures"
    )
    event_failure_grace: int = Field(
        default=5, description="Failures tolerated before exponential backoff"
    )
    event_page_size: int = Field(default=50, ge=1, description="Events per page")
    event_batch_size: int = Field(default=10, ge=1, description="Events processed concurrently")
    event_batch_pause_seconds: float = Field(default=0.5, description="Pause between batches")
    seen_events_capacity: int = Field(default=10_000, description="Dedup set capacity")
    seen_events_retain: int = Field(default=1_000, description="Dedup entries kept on trim")
    cursor_stale_seconds: float = Field(
        default=300.0, description="Cursor age reported as stale"
    )
    cursor_health_interval_seconds: float = Field(
        default=300.0, description="Cursor health check period"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def json_logs(self) -> bool:
        if self.log_json is None:
            return self.is_production
        return self.log_json

    @property
    def resolved_bitcoin_api_url(self) -> str:
        return (self.bitcoin_api_url or DEFAULT_BITCOIN_API_URLS[self.bitcoin_network]).rstrip("/")

    @property
    def resolved_fee_api_url(self) -> str:
        return self.fee_api_url or DEFAULT_FEE_API_URLS[self.bitcoin_network]

    @property
    def resolved_sui_rpc_url(self) -> str:
        return self.sui_rpc_url or f"https://fullnode.{self.sui_network}.sui.io:443"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
