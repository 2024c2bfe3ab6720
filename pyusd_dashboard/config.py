"""Configuration management for the dashboard service."""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # JSON-RPC Node Configuration
    rpc_url: str = Field(
        default="http://localhost:8545",
        description="Ethereum JSON-RPC endpoint"
    )
    rpc_timeout: int = Field(
        default=15,
        description="JSON-RPC request timeout in seconds"
    )
    rpc_max_block_range: int = Field(
        default=5,
        description="Maximum block span the provider accepts per eth_getLogs call"
    )
    rpc_batch_delay: float = Field(
        default=0.1,
        description="Pause between chunked eth_getLogs calls in seconds"
    )
    rpc_max_attempts: int = Field(
        default=3,
        description="Attempts per JSON-RPC call before giving up"
    )
    rpc_retry_min_wait: float = Field(
        default=0.5,
        description="Minimum backoff between JSON-RPC retries in seconds"
    )
    rpc_retry_max_wait: float = Field(
        default=5.0,
        description="Maximum backoff between JSON-RPC retries in seconds"
    )
    rpc_connection_max_age: int = Field(
        default=1800,
        description="Seconds before the HTTP session to the node is recreated"
    )

    # Token Configuration
    token_address: str = Field(
        default="0x6c3ea9036406852006290770BEdFcAbA0e23A0e8",
        description="ERC-20 contract address of the tracked stablecoin"
    )
    token_decimals: int = Field(
        default=6,
        description="Decimal places of the token's minor units"
    )
    token_symbol: str = Field(
        default="PYUSD",
        description="Display symbol used in insights"
    )

    # Live Feed Configuration
    feed_enabled: bool = Field(
        default=True,
        description="Run the live transfer feed alongside the API"
    )
    feed_size: int = Field(
        default=20,
        description="Number of recent transfers kept by the feed"
    )
    feed_max_size: int = Field(
        default=50,
        description="Hard cap on the feed size and on /transfers?count"
    )
    feed_filter_interval: float = Field(
        default=5.0,
        description="Seconds between eth_getFilterChanges polls"
    )
    feed_poll_interval: float = Field(
        default=15.0,
        description="Seconds between eth_getLogs polls in fallback mode"
    )
    feed_refresh_timeout: float = Field(
        default=60.0,
        description="Maximum duration of one refresh cycle in seconds"
    )
    feed_backfill_attempts: int = Field(
        default=20,
        description="Block windows scanned backwards when the feed starts"
    )
    feed_max_catchup_blocks: int = Field(
        default=100,
        description="Maximum blocks scanned by one polling cycle"
    )

    # Warehouse Configuration
    gcp_project: Optional[str] = Field(
        default=None,
        description="Google Cloud project billed for BigQuery jobs"
    )
    warehouse_table: str = Field(
        default="bigquery-public-data.goog_blockchain_ethereum_mainnet_us.token_transfers",
        description="Fully qualified token transfers table"
    )
    warehouse_location: Optional[str] = Field(
        default=None,
        description="BigQuery job location"
    )
    warehouse_timeout: float = Field(
        default=30.0,
        description="Warehouse query timeout in seconds"
    )

    # Generative AI Configuration
    gemini_api_key: Optional[str] = Field(
        default=None,
        description="Gemini API key, rule-based insights are used when unset"
    )
    gemini_model: str = Field(
        default="gemini-2.0-flash",
        description="Gemini model name"
    )
    ai_timeout: float = Field(
        default=20.0,
        description="Text generation timeout in seconds"
    )

    # Heuristics
    sandwich_min_transfers: int = Field(
        default=3,
        description="Transfers in one block that flag it as sandwich-like"
    )
    frontrun_tolerance: float = Field(
        default=0.1,
        description="Relative amount tolerance for frontrun-like pairs"
    )
    whale_threshold: int = Field(
        default=100_000,
        description="Transfer size in whole tokens counted as a whale transaction"
    )
    mev_recent_limit: int = Field(
        default=10,
        description="Recent flagged blocks returned by /mev"
    )

    # HTTP API
    http_host: str = Field(
        default="0.0.0.0",
        description="Bind address for the HTTP API"
    )
    http_port: int = Field(
        default=8080,
        description="Port for the HTTP API"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_format: str = Field(
        default="json",
        description="Log format (json or text)"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
