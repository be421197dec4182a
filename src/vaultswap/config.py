"""Application configuration using pydantic-settings."""

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
    # Telegram
    # ======================
    telegram_bot_token: str = Field(default="", description="Telegram bot token for notifications")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/vaultswap.db",
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
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(default=True, description="Use dry-run gateways (no real transactions)")

    # ======================
    # Swap Gateway (Jupiter)
    # ======================
    jupiter_api_url: str = Field(
        default="https://lite-api.jup.ag", description="Jupiter API base URL"
    )
    slippage_bps: int = Field(default=200, description="Max slippage in basis points (2%)")
    only_direct_routes: bool = Field(
        default=True, description="Restrict quotes to direct routes"
    )

    # ======================
    # Bridge Gateway (SimpleSwap)
    # ======================
    simpleswap_api_url: str = Field(
        default="https://api.simpleswap.io", description="SimpleSwap API base URL"
    )
    simpleswap_api_key: str = Field(default="", description="SimpleSwap API key")

    # ======================
    # Chain RPC Endpoints
    # ======================
    sol_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    tron_api_url: str = Field(default="https://api.trongrid.io", description="TronGrid API URL")
    tron_api_key: str = Field(default="", description="TronGrid API key (TRON-PRO-API-KEY)")

    # ======================
    # System Wallets
    # ======================
    # Liquidity router: Solana pool wallet that executes swaps and pays out SOL
    router_wallet_address: str = Field(default="", description="Liquidity router Solana address")
    router_wallet_secret: Optional[str] = Field(
        default=None, description="Liquidity router secret key (base58 or JSON array)"
    )
    # Privacy relay: TRON wallet receiving bridge leg-1 proceeds
    relay_wallet_address: str = Field(default="", description="Privacy relay TRON address")
    relay_wallet_secret: Optional[str] = Field(
        default=None, description="Privacy relay private key (hex)"
    )
    tron_fee_reserve: Decimal = Field(
        default=Decimal("2"), description="TRX kept on the relay wallet for network fees"
    )

    # ======================
    # Settlement Worker
    # ======================
    poll_interval: int = Field(default=15, description="Seconds between settlement cycles")
    swap_batch_size: int = Field(default=5, description="Swap jobs handled per cycle")
    bridge_batch_size: int = Field(default=20, description="Bridge operations handled per cycle")
    stale_job_seconds: int = Field(
        default=120, description="Requeue processing jobs without a reference after this age"
    )
    send_lock_timeout_seconds: int = Field(
        default=120, description="Force-release outbound send locks after this age"
    )

    # ======================
    # Bridge Limits
    # ======================
    min_bridge_amount: Decimal = Field(
        default=Decimal("0.05"), description="Minimum SOL per deposit or withdrawal"
    )
    recovery_min_intermediate: Decimal = Field(
        default=Decimal("10"),
        description="Relay TRX balance that counts as missing leg-1 proceeds",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "telegram_bot_token": "***" if self.telegram_bot_token else "(not set)",
            "gateways": {
                "jupiter": self.jupiter_api_url,
                "simpleswap": {
                    "url": self.simpleswap_api_url,
                    "api_key": "***" if self.simpleswap_api_key else "(not set)",
                },
                "solana_rpc": self.sol_rpc_url,
                "tron_api": self.tron_api_url,
            },
            "wallets": {
                "router": self.router_wallet_address or "(not set)",
                "router_secret": "***" if self.router_wallet_secret else "(not set)",
                "relay": self.relay_wallet_address or "(not set)",
                "relay_secret": "***" if self.relay_wallet_secret else "(not set)",
            },
            "worker": {
                "poll_interval": self.poll_interval,
                "swap_batch_size": self.swap_batch_size,
                "stale_job_seconds": self.stale_job_seconds,
                "send_lock_timeout_seconds": self.send_lock_timeout_seconds,
            },
            "limits": {
                "slippage_bps": self.slippage_bps,
                "min_bridge_amount": str(self.min_bridge_amount),
                "recovery_min_intermediate": str(self.recovery_min_intermediate),
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
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
