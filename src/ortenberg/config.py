"""Application configuration using pydantic-settings.

The active Ethereum network is resolved once at startup into an immutable
NetworkConfig that is handed to every component needing an RPC endpoint or
the service signing key.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ortenberg.errors import ConfigurationError

# Chain IDs per supported network
CHAIN_IDS = {
    "mainnet": 1,
    "sepolia": 11155111,
}


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
        default="sqlite+aiosqlite:///./data/ortenberg.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3000, description="API server port")
    api_key: str = Field(default="", description="Client API key for protected endpoints")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Network
    # ======================
    ethereum_network: str = Field(
        default="sepolia", description="Active network: 'mainnet' or 'sepolia'"
    )
    mainnet_rpc_url: str = Field(default="", description="Ethereum mainnet RPC URL")
    sepolia_rpc_url: str = Field(default="", description="Sepolia testnet RPC URL")
    service_wallet_private_key: Optional[str] = Field(
        default=None, description="Private key of the service signing wallet"
    )
    rpc_timeout: float = Field(default=30.0, description="Timeout for a single RPC call (seconds)")
    confirmation_poll_interval: float = Field(
        default=4.0, description="Delay between receipt polls while waiting for confirmations"
    )

    # ======================
    # Worker
    # ======================
    worker_concurrency: int = Field(default=1, description="Dispatch loops per queue")
    queue_poll_interval: float = Field(
        default=1.0, description="Idle delay between queue polls (seconds)"
    )
    job_lease_seconds: float = Field(
        default=30.0, description="Lease length of a claimed job before it counts as stalled"
    )
    max_stalled_count: int = Field(
        default=1, description="Lease expiries tolerated per job before it is failed"
    )

    # ======================
    # Alerting
    # ======================
    alerting_webhook_url: Optional[str] = Field(
        default=None, description="Webhook receiving terminal-failure alerts (Slack, PagerDuty)"
    )
    telegram_bot_token: str = Field(default="", description="Telegram bot token for alerts")
    alert_chat_ids: str = Field(
        default="", description="Comma-separated Telegram chat IDs receiving alerts"
    )

    # ======================
    # Safety Guards
    # ======================
    dry_run: bool = Field(default=True, description="Enable dry-run mode (no real transactions)")

    @property
    def alert_chats(self) -> list[int]:
        """Parse alert chat IDs into a list of integers."""
        if not self.alert_chat_ids:
            return []
        return [int(cid.strip()) for cid in self.alert_chat_ids.split(",") if cid.strip()]

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
            "ethereum_network": self.ethereum_network,
            "service_wallet": "***" if self.service_wallet_private_key else "(not set)",
            "alerting": {
                "webhook": "***" if self.alerting_webhook_url else "(not set)",
                "telegram": "***" if self.telegram_bot_token else "(not set)",
            },
            "worker": {
                "concurrency": self.worker_concurrency,
                "lease_seconds": self.job_lease_seconds,
                "max_stalled_count": self.max_stalled_count,
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


@dataclass(frozen=True)
class NetworkConfig:
    """Network selection resolved once at process start."""

    name: str
    chain_id: int
    rpc_url: str
    private_key: Optional[str]
    rpc_timeout: float = 30.0
    confirmation_poll_interval: float = 4.0

    def __repr__(self) -> str:
        key = "***" if self.private_key else None
        return (
            f"NetworkConfig(name={self.name!r}, chain_id={self.chain_id}, "
            f"rpc_url={self.rpc_url!r}, private_key={key!r})"
        )


def resolve_network(settings: Settings) -> NetworkConfig:
    """Resolve the active network into an immutable NetworkConfig.

    Raises:
        ConfigurationError: unknown network, or no RPC URL outside dry-run mode
    """
    name = settings.ethereum_network.strip().lower()
    if name not in CHAIN_IDS:
        raise ConfigurationError(
            f"Unsupported ETHEREUM_NETWORK '{settings.ethereum_network}' "
            f"(expected one of: {', '.join(CHAIN_IDS)})"
        )

    rpc_url = settings.mainnet_rpc_url if name == "mainnet" else settings.sepolia_rpc_url
    if not rpc_url and not settings.dry_run:
        raise ConfigurationError(
            f"RPC URL for network '{name}' is not defined in environment variables."
        )

    return NetworkConfig(
        name=name,
        chain_id=CHAIN_IDS[name],
        rpc_url=rpc_url,
        private_key=settings.service_wallet_private_key,
        rpc_timeout=settings.rpc_timeout,
        confirmation_poll_interval=settings.confirmation_poll_interval,
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
