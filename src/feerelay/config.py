"""Application configuration using pydantic-settings.

Covers the ledger RPC endpoint, the fee payer identity, the deployed
contract addresses and the typed-data domain users sign against.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/feerelay.db",
        description="Database connection URL",
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
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Ledger RPC
    # ======================
    rpc_url: str = Field(
        default="https://public-en-kairos.node.kaia.io", description="Kaia node RPC URL"
    )
    rpc_namespace: str = Field(default="kaia", description="JSON-RPC method namespace")
    chain_id: int = Field(default=1001, description="Chain ID (8217 mainnet, 1001 Kairos)")
    rpc_timeout: float = Field(default=15.0, description="Per-request RPC timeout in seconds")
    rpc_max_retries: int = Field(default=3, description="Retries for read-only RPC calls")

    # ======================
    # Fee Payer
    # ======================
    fee_payer_private_key: Optional[str] = Field(
        default=None, description="Fee payer private key (hex or Fernet-encrypted)"
    )
    fee_payer_low_balance: Decimal = Field(
        default=Decimal("1"), description="Warn when fee payer balance drops below (native units)"
    )
    confirmations: int = Field(default=1, description="Block confirmations required")
    receipt_timeout: float = Field(default=60.0, description="Seconds to wait for a receipt")
    receipt_poll_interval: float = Field(default=1.0, description="Receipt polling interval")
    submission_lock_timeout: float = Field(
        default=30.0, description="Max seconds to wait for the submission queue"
    )
    fee_payer_gas_limit: int = Field(default=200000, description="Gas limit for fee payer calls")
    reconcile_interval: float = Field(
        default=30.0, description="Seconds between reconcile sweeps of PROCESSING transfers (0 = off)"
    )

    # ======================
    # Contracts
    # ======================
    token_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="Settlement token (USDT)"
    )
    token_decimals: int = Field(default=6, description="Settlement token decimals")
    sy_vault_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="SY vault"
    )
    orchestrator_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="PYT/NYT orchestrator"
    )
    pyt_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="Principal yield token"
    )
    nyt_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="Negative yield token"
    )
    autocompound_vault_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="Auto-compound vault"
    )
    yield_set_address: str = Field(
        default="0x0000000000000000000000000000000000000000", description="Yield set portfolio"
    )

    # ======================
    # Typed-data Domain
    # ======================
    domain_name: str = Field(default="LineX", description="EIP-712 domain name for DeFi operations")
    domain_version: str = Field(default="1", description="EIP-712 domain version")
    transfer_domain_name: str = Field(
        default="LineX Transfer", description="EIP-712 domain name for transfers and faucet claims"
    )

    # ======================
    # Key-value Store
    # ======================
    redis_url: str = Field(default="", description="Redis URL (empty = in-process store)")
    quote_retention_seconds: int = Field(
        default=3600, description="How long expired quotes stay readable"
    )
    vault_info_ttl: int = Field(default=300, description="Vault info cache TTL in seconds")

    # ======================
    # Faucet
    # ======================
    faucet_amount: Decimal = Field(default=Decimal("100"), description="Tokens minted per claim")

    # ======================
    # Encryption
    # ======================
    master_key: Optional[str] = Field(
        default=None, description="Master encryption key for the fee payer key (Fernet key)"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_fee_payer(self) -> bool:
        """Check if a fee payer key is configured."""
        return bool(self.fee_payer_private_key)

    @property
    def contract_addresses(self) -> dict[str, str]:
        """Deployed contract addresses keyed by role."""
        return {
            "token": self.token_address,
            "sy_vault": self.sy_vault_address,
            "orchestrator": self.orchestrator_address,
            "pyt": self.pyt_address,
            "nyt": self.nyt_address,
            "autocompound_vault": self.autocompound_vault_address,
            "yield_set": self.yield_set_address,
        }

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "redis_url": self._redact_url(self.redis_url) if self.redis_url else "(memory)",
            "ledger": {
                "rpc": self.rpc_url,
                "namespace": self.rpc_namespace,
                "chain_id": self.chain_id,
                "confirmations": self.confirmations,
            },
            "fee_payer": "***" if self.fee_payer_private_key else "(not set)",
            "master_key": "***" if self.master_key else "(not set)",
            "contracts": self.contract_addresses,
            "domain": {
                "name": self.domain_name,
                "version": self.domain_version,
                "transfer_name": self.transfer_domain_name,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials in a connection URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
