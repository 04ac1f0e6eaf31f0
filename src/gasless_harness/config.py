"""Configuration surface for the gasless harness.

Loaded from environment variables with prefix ``GASLESS_`` (nested sections
use ``__``, e.g. ``GASLESS_RELAY__AUDITORS_COUNT=1``) or from a ``.env`` file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .types import Address, PaymasterLimits


class CompilerSettings(BaseModel):
    """Pinned solc settings; artifacts built otherwise are refused."""
    version: str = "0.8.9"
    optimizer_enabled: bool = True
    optimizer_runs: int = 200


class NetworkSettings(BaseModel):
    """Relay network infrastructure addresses (live mode only)."""
    forwarder: Optional[str] = None
    penalizer: Optional[str] = None
    relay_hub: Optional[str] = None
    stake_manager: Optional[str] = None
    version_registry: Optional[str] = None

    @field_validator("*")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        return str(Address(v))


class RelaySettings(BaseModel):
    """Relay provider configuration."""
    preferred_relays: List[str] = Field(default_factory=lambda: ["http://127.0.0.1:8090"])
    auditors_count: int = 0
    log_level: Optional[str] = None
    max_relay_nonce_gap: int = 3
    valid_until_blocks: int = 6000
    request_timeout_seconds: float = 30.0

    @field_validator("preferred_relays", mode="before")
    @classmethod
    def parse_relays(cls, v):
        """Parse comma-separated relay URLs from env var."""
        if isinstance(v, str):
            return [u.strip() for u in v.split(",") if u.strip()]
        return v


class TokenSettings(BaseModel):
    name: str = "Gasless Token"
    symbol: str = "GT"
    decimals: int = 18
    mint_amount: int = 100_000_000 * 10**18


class LimitsSettings(BaseModel):
    """Default paymaster limits, field for field."""
    max_pct_relay_fee: int = 0
    max_base_relay_fee: int = 0
    acceptance_budget_overhead: int = 50_000
    relayed_call_overhead: int = 0
    pre_relayed_call_gas_limit: int = 70_000
    post_relayed_call_gas_used: int = 12_000
    calldata_size_limit: int = 10_500
    gas_limit_epsilon: int = 0

    def to_limits(self) -> PaymasterLimits:
        return PaymasterLimits(**self.model_dump())


class HarnessSettings(BaseSettings):
    """Main harness configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GASLESS_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Chain
    chain_mode: Literal["simulated", "live"] = "simulated"
    rpc_url: str = "http://127.0.0.1:8545"
    artifacts_dir: str = "artifacts"

    compiler: CompilerSettings = Field(default_factory=CompilerSettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)

    # Funding
    deposit_wei: int = 2 * 10**18

    # Orchestration
    concurrent_wiring: bool = False

    @field_validator("deposit_wei")
    @classmethod
    def validate_deposit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("deposit_wei must be positive")
        return v


@lru_cache
def get_settings() -> HarnessSettings:
    """Get cached settings instance."""
    return HarnessSettings()
