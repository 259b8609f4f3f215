"""Canonical configuration surface for the marketplace core."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Solana USDC mints
USDC_MINT_MAINNET = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_MINT_DEVNET = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"


class MarketSettings(BaseSettings):
    """Main marketplace configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENTMARKET_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: Literal["dev", "test", "prod"] = "dev"

    # Ledger store
    database_url: str = "sqlite+aiosqlite:///./data/agentmarket.db"
    database_echo: bool = False

    # Payment network
    default_network: Literal["mainnet-beta", "devnet", "testnet"] = "devnet"
    solana_rpc_urls: Dict[str, str] = Field(default_factory=lambda: {
        "mainnet-beta": "https://api.mainnet-beta.solana.com",
        "devnet": "https://api.devnet.solana.com",
        "testnet": "https://api.testnet.solana.com",
    })
    usdc_mints: Dict[str, str] = Field(default_factory=lambda: {
        "mainnet-beta": USDC_MINT_MAINNET,
        "devnet": USDC_MINT_DEVNET,
        "testnet": USDC_MINT_DEVNET,
    })
    rpc_timeout_seconds: float = 30.0
    # Commitment the verifier requires before a payment counts as confirmed
    commitment: Literal["confirmed", "finalized"] = "confirmed"

    # Purchase flow
    session_ttl_seconds: int = 15 * 60
    max_retries: int = 2
    provider_timeout_seconds: float = 30.0
    health_check_timeout_seconds: float = 5.0
    health_check_candidates: int = 5

    # Matching
    matcher_cache_ttl_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0 or v > 5:
            raise ValueError("max_retries must be between 0 and 5")
        return v

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Map Heroku/Railway style DSNs onto async SQLAlchemy drivers."""
        if not v:
            return "sqlite+aiosqlite:///./data/agentmarket.db"
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        if v.startswith("sqlite:///"):
            return v.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> MarketSettings:
    """Load MarketSettings once per process to keep components consistent."""
    env_path = Path(env_file) if env_file else None
    return MarketSettings(_env_file=env_path)
