"""Application configuration using pydantic-settings.

Holds the Kaia node endpoint, chain id, fee payer key and the ceilings the
fee payer is willing to sponsor.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 1 KAIA = 10^18 peb
PEB_PER_KAIA = 10**18


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Kaia node
    # ======================
    kaia_rpc_url: str = Field(
        default="https://public-en-kairos.node.kaia.io", description="Kaia JSON-RPC endpoint"
    )
    kaia_chain_id: int = Field(default=1001, description="Chain id (8217 mainnet, 1001 Kairos)")
    kaia_rpc_namespace: str = Field(
        default="kaia", description="JSON-RPC method namespace (kaia, klay or eth)"
    )
    kaia_rpc_method_overrides: dict[str, str] = Field(
        default_factory=dict,
        description="Per-operation method name overrides, e.g. {\"send_raw_transaction\": \"klay_sendRawTransaction\"}",
    )
    rpc_timeout: float = Field(default=30.0, description="Timeout for a single RPC call (seconds)")

    # ======================
    # Fee payer wallet
    # ======================
    kaia_fee_payer_private_key: Optional[str] = Field(
        default=None, description="Fee payer private key (hex, optionally Fernet-encrypted)"
    )
    master_key: Optional[str] = Field(
        default=None, description="Master encryption key for the fee payer key (Fernet key)"
    )

    # ======================
    # Safety Guards
    # ======================
    max_gas_limit: int = Field(default=500_000, description="Maximum sponsored gas limit")
    max_value_peb: int = Field(
        default=PEB_PER_KAIA // 10, description="Maximum transferred value (0.1 KAIA)"
    )
    min_eligibility_balance_peb: int = Field(
        default=PEB_PER_KAIA // 1000, description="Minimum balance to be eligible (0.001 KAIA)"
    )

    # ======================
    # Relay
    # ======================
    receipt_timeout: float = Field(default=300.0, description="Receipt wait before giving up (seconds)")
    receipt_poll_interval: float = Field(default=2.0, description="Receipt poll interval (seconds)")
    nonce_reservation_ttl: float = Field(
        default=300.0, description="How long a prepared nonce stays reserved (seconds)"
    )

    @property
    def has_fee_payer(self) -> bool:
        """Check if a fee payer key is configured."""
        return bool(self.kaia_fee_payer_private_key)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "kaia": {
                "rpc": self.kaia_rpc_url,
                "chain_id": self.kaia_chain_id,
                "namespace": self.kaia_rpc_namespace,
                "method_overrides": self.kaia_rpc_method_overrides,
            },
            "fee_payer_key": "***" if self.kaia_fee_payer_private_key else "(not set)",
            "master_key": "***" if self.master_key else "(not set)",
            "safety": {
                "max_gas_limit": self.max_gas_limit,
                "max_value_peb": self.max_value_peb,
                "min_eligibility_balance_peb": self.min_eligibility_balance_peb,
            },
            "relay": {
                "receipt_timeout": self.receipt_timeout,
                "receipt_poll_interval": self.receipt_poll_interval,
                "nonce_reservation_ttl": self.nonce_reservation_ttl,
            },
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
