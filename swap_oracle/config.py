"""Configuration management for the swap oracle."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

NETWORKS = ("mainnet", "testnet", "signet", "regtest")

# Policies where funds carry no value: preimages and raw error detail may be shown
TEST_NETWORK_POLICIES = frozenset({"regtest", "testnet", "signet"})


class Config(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Bitcoin Configuration
    bitcoin_network: str = Field(
        default="testnet",
        description="Bitcoin network: mainnet, testnet, signet or regtest"
    )
    bitcoin_rpc_url: str = Field(
        default="http://localhost:18332",
        description="Bitcoin RPC URL"
    )
    bitcoin_rpc_user: Optional[str] = Field(
        default=None,
        description="Bitcoin RPC username"
    )
    bitcoin_rpc_pass: Optional[str] = Field(
        default=None,
        description="Bitcoin RPC password"
    )

    # Mempool API Configuration
    use_mempool_api: bool = Field(
        default=True,
        description="Use an Esplora/Mempool.space API instead of Bitcoin RPC"
    )
    mempool_api_url: str = Field(
        default="https://mempool.space/testnet/api",
        description="Esplora/Mempool.space API URL"
    )

    # Exchange (market maker) Configuration
    exchange_api_url: str = Field(
        default="http://localhost:3000",
        description="Market maker HTTP API URL"
    )
    exchange_api_key: Optional[str] = Field(
        default=None,
        description="Market maker API key sent as x-api-key"
    )
    exchange_ws_url: str = Field(
        default="ws://localhost:3001",
        description="Order update websocket URL"
    )
    exchange_timeout: float = Field(
        default=30.0,
        description="HTTP timeout in seconds for exchange calls"
    )
    quote_cache_ttl: int = Field(
        default=15,
        description="Seconds a fetched quote stays cached"
    )

    # Order Tracking
    push_connect_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for the push channel to connect"
    )
    poll_interval: float = Field(
        default=10.0,
        description="Seconds between order status polls"
    )
    order_not_found_grace: float = Field(
        default=300.0,
        description="Seconds an order may be unknown to the exchange before the swap is abandoned"
    )
    push_max_reconnect_attempts: int = Field(
        default=5,
        description="Reconnect attempts before push-tracked swaps fall back to polling"
    )
    push_reconnect_base_delay: float = Field(
        default=2.0,
        description="Base delay in seconds for push reconnect backoff"
    )
    outcome_queue_size: int = Field(
        default=1000,
        description="Capacity of the tracker outcome queue"
    )

    # Secret Store Configuration
    secret_store_backend: str = Field(
        default="database",
        description="Secret store backend: database or aws"
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///swap_secrets.db",
        description="Database URL for the secret store"
    )
    aws_region: str = Field(
        default="us-east-1",
        description="AWS region for Secrets Manager"
    )
    aws_secrets_prefix: str = Field(
        default="btc-oracle/",
        description="Name prefix for swap secrets in Secrets Manager"
    )
    secret_recovery_window_days: int = Field(
        default=7,
        description="Days a deleted swap secret stays recoverable"
    )
    max_retries: int = Field(
        default=3,
        description="Maximum number of attempts for failed store and ledger operations"
    )
    retry_base_delay: float = Field(
        default=1.0,
        description="First backoff delay in seconds"
    )
    retry_max_delay: float = Field(
        default=5.0,
        description="Backoff delay ceiling in seconds"
    )

    # Redemption Configuration
    redeem_fee_sats: int = Field(
        default=1000,
        description="Flat fee in satoshis deducted from the redeemed output"
    )
    redeemer_private_key: Optional[str] = Field(
        default=None,
        description="Redeemer signing key (hex or WIF)"
    )
    redeem_destination_address: Optional[str] = Field(
        default=None,
        description="Default address receiving redeemed funds"
    )
    auto_redeem: bool = Field(
        default=True,
        description="Redeem automatically once the order is filled"
    )

    # Swap Limits
    default_timelock_blocks: int = Field(
        default=144,
        description="Timelock in blocks when none is given"
    )
    max_lock_amount: int = Field(
        default=100_000_000,
        description="Largest lockable amount in satoshis"
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    check_interval: int = Field(
        default=60,
        description="Interval in seconds between expiry sweeps"
    )
    funding_poll_interval: float = Field(
        default=30.0,
        description="Seconds between checks of an HTLC address for its funding output"
    )

    # Notification Configuration
    enable_apprise: bool = Field(
        default=False,
        description="Enable Apprise operator alerts"
    )
    apprise_urls: list[str] = Field(
        default_factory=list,
        description="List of Apprise notification URLs"
    )

    # Health Server
    enable_health_server: bool = Field(
        default=True,
        description="Expose the health check endpoint"
    )
    health_port: int = Field(
        default=8080,
        description="Health server port"
    )

    @field_validator("bitcoin_network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        """Only known Bitcoin networks are accepted."""
        v = v.lower()
        if v not in NETWORKS:
            raise ValueError(f"bitcoin_network must be one of {', '.join(NETWORKS)}")
        return v

    @field_validator("secret_store_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate secret store backend selection."""
        v = v.lower()
        if v not in ("database", "aws"):
            raise ValueError("secret_store_backend must be 'database' or 'aws'")
        return v

    @property
    def network_policy(self) -> str:
        """Disclosure policy derived from the network; mainnet is production."""
        if self.bitcoin_network == "mainnet":
            return "production"
        return self.bitcoin_network


# Global config instance
config = Config()
