from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
DLMM_PROGRAM_ID = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"

EVENT_SOURCES = ("indexer", "onchain")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Chain
    rpc_endpoint: str = Field(default="https://api.mainnet-beta.solana.com", description="Solana JSON-RPC URL")
    dlmm_program_id: str = DLMM_PROGRAM_ID

    # Price and indexer APIs
    jupiter_price_url: str = "https://api.jup.ag/price/v2"
    birdeye_base_url: str = "https://public-api.birdeye.so"
    birdeye_api_key: str = Field(default="", description="Birdeye API key for historical prices")
    meteora_api_url: str = "https://dlmm-api.meteora.ag"

    # Valuation
    reference_mint: str = Field(default=WRAPPED_SOL_MINT, description="Reference currency for the backfill pass")

    # Event source
    event_source: str = Field(default="indexer", description="indexer or onchain")
    event_decoder: str = Field(default="", description="module:attribute of the on-chain event decoder")

    # Retry / batching
    max_retries: int = 5
    initial_retry_delay: float = 1.0  # seconds
    retry_deadline: Optional[float] = Field(default=None, description="Seconds after the first attempt to stop retrying")
    max_batch_size: int = 50

    # Cache TTLs (seconds)
    spot_price_ttl: int = 60
    aggregate_ttl: int = 300
    account_ttl: int = 180
    redis_url: Optional[str] = Field(default=None, description="Redis URL; in-process cache when unset")

    # Backend
    backend_host: str = "0.0.0.0"
    backend_port: int = 8004
    environment: str = Field(default="development", description="dev/staging/production")
    cors_origins: str = "http://localhost:3000"

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("event_source")
    @classmethod
    def validate_event_source(cls, v: str) -> str:
        v = (v or "indexer").strip().lower()
        if v not in EVENT_SOURCES:
            raise ValueError(f"event_source must be one of {EVENT_SOURCES}, got {v!r}")
        return v

    @field_validator("redis_url")
    @classmethod
    def empty_redis_url(cls, v: Optional[str]) -> Optional[str]:
        # Allow REDIS_URL= in .env to mean "no redis"
        return v or None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
