"""Application configuration using pydantic-settings.

Every chain carries one primary RPC endpoint and an ordered list of
fallbacks. Fallbacks are given as comma-separated URLs, e.g.
``ETHEREUM_RPC_FALLBACKS=https://eth.llamarpc.com,https://cloudflare-eth.com``.
"""

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
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Key Material
    # ======================
    encryption_key: Optional[str] = Field(
        default=None, description="Process-wide secret used to derive the key-at-rest cipher key"
    )
    encryption_salt: str = Field(
        default="chainrail-salt-v1", description="PBKDF2 salt for the key-at-rest cipher key"
    )

    # ======================
    # RPC / Health
    # ======================
    rpc_timeout: float = Field(default=10.0, description="Per-call RPC timeout in seconds")
    health_check_interval: float = Field(
        default=30.0, description="Seconds between background endpoint probes"
    )
    health_ttl: float = Field(
        default=30.0, description="Seconds before cached endpoint health is considered stale"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    bitcoin_rpc_url: str = Field(
        default="https://bitcoin-rpc.publicnode.com", description="Bitcoin JSON-RPC URL"
    )
    bitcoin_rpc_fallbacks: str = Field(
        default="https://bitcoin.drpc.org", description="Bitcoin fallback RPC URLs"
    )
    ethereum_rpc_url: str = Field(
        default="https://rpc.ankr.com/eth", description="Ethereum RPC URL"
    )
    ethereum_rpc_fallbacks: str = Field(
        default="https://eth.llamarpc.com,https://cloudflare-eth.com,https://eth-mainnet.public.blastapi.io",
        description="Ethereum fallback RPC URLs",
    )
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", description="Polygon RPC URL")
    polygon_rpc_fallbacks: str = Field(
        default="https://rpc.ankr.com/polygon,https://polygon.llamarpc.com",
        description="Polygon fallback RPC URLs",
    )
    arbitrum_rpc_url: str = Field(
        default="https://arb1.arbitrum.io/rpc", description="Arbitrum One RPC URL"
    )
    arbitrum_rpc_fallbacks: str = Field(
        default="https://rpc.ankr.com/arbitrum,https://arbitrum.llamarpc.com",
        description="Arbitrum fallback RPC URLs",
    )
    optimism_rpc_url: str = Field(
        default="https://mainnet.optimism.io", description="Optimism RPC URL"
    )
    optimism_rpc_fallbacks: str = Field(
        default="https://rpc.ankr.com/optimism,https://optimism.llamarpc.com",
        description="Optimism fallback RPC URLs",
    )
    celo_rpc_url: str = Field(default="https://forno.celo.org", description="Celo RPC URL")
    celo_rpc_fallbacks: str = Field(
        default="https://rpc.ankr.com/celo", description="Celo fallback RPC URLs"
    )
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    solana_rpc_fallbacks: str = Field(
        default="https://solana-mainnet.rpc.extrnode.com", description="Solana fallback RPC URLs"
    )

    # ======================
    # Bitcoin
    # ======================
    bitcoin_utxo_api_url: str = Field(
        default="https://blockstream.info/api", description="Esplora-style UTXO index URL"
    )
    bitcoin_network: str = Field(default="bitcoin", description="bitcoin or testnet")
    bitcoin_default_fee: int = Field(
        default=10000, description="Fee in satoshis when no fee rate is given"
    )
    bitcoin_dust_threshold: int = Field(
        default=546, description="Change at or below this many satoshis is forfeited to fee"
    )

    # ======================
    # EVM
    # ======================
    evm_receipt_timeout: float = Field(
        default=120.0, description="Seconds to wait for the first confirmation"
    )
    evm_receipt_poll_interval: float = Field(
        default=2.0, description="Seconds between receipt polls"
    )

    # ======================
    # Solana
    # ======================
    solana_max_retries: int = Field(
        default=3, description="Re-sends of the same signed bytes on transient rejection"
    )
    solana_confirm_timeout: float = Field(
        default=60.0, description="Seconds to wait for confirmed commitment"
    )
    solana_confirm_poll_interval: float = Field(
        default=1.0, description="Seconds between signature status polls"
    )

    @property
    def bitcoin_testnet(self) -> bool:
        return self.bitcoin_network.lower() == "testnet"

    def get_endpoints(self, chain: str) -> tuple[str, list[str]]:
        """Get (primary, fallbacks) RPC endpoints for a chain.

        Raises:
            KeyError: If the chain has no endpoint configuration
        """
        key = chain.lower()
        primary = getattr(self, f"{key}_rpc_url", None)
        if not primary:
            raise KeyError(f"No RPC endpoints configured for {chain}")
        raw = getattr(self, f"{key}_rpc_fallbacks", "") or ""
        fallbacks = [url.strip() for url in raw.split(",") if url.strip()]
        return primary, fallbacks

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        from chainrail.chains import CHAINS

        chains = {}
        for name in CHAINS:
            primary, fallbacks = self.get_endpoints(name)
            chains[name] = {
                "rpc": self._redact_url(primary),
                "fallbacks": [self._redact_url(url) for url in fallbacks],
            }
        chains["bitcoin"]["utxo_api"] = self.bitcoin_utxo_api_url

        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "encryption_key": "***" if self.encryption_key else "(not set)",
            "rpc_timeout": self.rpc_timeout,
            "health_check_interval": self.health_check_interval,
            "chains": chains,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact API keys embedded in RPC URLs."""
        if "api-key=" in url or "apikey=" in url:
            base, _ = url.split("?", 1)
            return f"{base}?***"
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            creds, host = rest.rsplit("@", 1)
            if ":" in creds:
                user, _ = creds.split(":", 1)
                return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
