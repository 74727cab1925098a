"""Configuration management for the swap resolver."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # UTXO chain (Esplora / mempool.space compatible API)
    utxo_api_url: str = Field(
        default="https://mempool.space/testnet/api",
        description="Primary Esplora API URL for the UTXO chain",
    )
    utxo_backup_api_urls: list[str] = Field(
        default_factory=list,
        description="Backup Esplora API URLs used on node failover",
    )
    network: str = Field(
        default="testnet",
        description="UTXO network: mainnet, testnet, signet or regtest",
    )
    address_scheme: str = Field(
        default="p2wsh",
        description="HTLC address scheme: p2sh or p2wsh",
    )
    refund_policy: str = Field(
        default="sender_only",
        description="HTLC refund branch: sender_only or anyone_after_timeout",
    )

    # Account chain (escrow relayer)
    relayer_api_url: str = Field(
        default="http://localhost:3000/api",
        description="REST relayer in front of the account-chain escrow contracts",
    )
    escrow_factory: str = Field(
        default="0x" + "00" * 19 + "01",
        description="Escrow factory address used for CREATE2 derivation",
    )
    escrow_implementation: str = Field(
        default="0x" + "00" * 19 + "02",
        description="Escrow implementation cloned by the factory",
    )

    # Protocol parameters
    min_confirmations: int = Field(
        default=1, description="Confirmations before a funding event is final"
    )
    poll_interval: float = Field(
        default=5.0, description="Seconds between watcher polls"
    )
    max_retries: int = Field(
        default=5, description="Consecutive client failures before failover"
    )
    backoff_base: float = Field(
        default=1.0, description="First retry delay in seconds"
    )
    backoff_max: float = Field(
        default=60.0, description="Upper bound for a single retry delay"
    )
    default_timelock: int = Field(
        default=3600, description="Seconds until the destination HTLC expires"
    )
    src_cancellation_margin: int = Field(
        default=3600,
        description="Extra seconds the source escrow stays locked after the HTLC",
    )
    auto_refund: bool = Field(
        default=True, description="Cancel expired legs from the watcher"
    )

    # Fees
    fee_target_blocks: int = Field(
        default=6, description="Confirmation target for fee estimates"
    )
    fee_cache_ttl: int = Field(
        default=60, description="Seconds a fee estimate stays cached"
    )
    fee_bump_after: int = Field(
        default=1800,
        description="Seconds an unconfirmed transaction waits before a fee bump",
    )
    fee_bump_multiplier: float = Field(
        default=1.5, description="Fee rate multiplier for replacements"
    )
    min_fee_rate: int = Field(default=1, description="Floor in sat/vbyte")

    # Wallet
    signer_private_keys: list[str] = Field(
        default_factory=list,
        description="Hex private keys; the first funds HTLCs and receives change",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///swaps.db",
        description="Database URL for swap state",
    )

    # Application
    log_level: str = Field(default="INFO", description="Logging level")
    health_port: int = Field(default=8080, description="Health server port")
    enable_apprise: bool = Field(
        default=False, description="Enable Apprise operator alerts"
    )
    apprise_urls: list[str] = Field(
        default_factory=list, description="List of Apprise notification URLs"
    )

    @field_validator("network")
    @classmethod
    def validate_network(cls, v):
        if v not in ("mainnet", "testnet", "signet", "regtest"):
            raise ValueError(f"unsupported network: {v}")
        return v

    @field_validator("address_scheme")
    @classmethod
    def validate_address_scheme(cls, v):
        if v not in ("p2sh", "p2wsh"):
            raise ValueError(f"unsupported address scheme: {v}")
        return v

    @field_validator("refund_policy")
    @classmethod
    def validate_refund_policy(cls, v):
        if v not in ("sender_only", "anyone_after_timeout"):
            raise ValueError(f"unsupported refund policy: {v}")
        return v

    @field_validator("fee_bump_multiplier")
    @classmethod
    def validate_fee_bump(cls, v):
        """Replacements must pay strictly more."""
        if v <= 1.0:
            raise ValueError("fee_bump_multiplier must be greater than 1")
        return v


# Global config instance
config = Config()
