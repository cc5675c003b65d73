# x402_relay/core/config.py
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load .env file if it exists
load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Settlement Relay"
    SERVICE_NAME: str = "x402-facilitator"
    LOG_LEVEL: str = "INFO"
    CORS_ENABLED: bool = True

    # --- Settlement ---
    # "live" requires TREASURY_PRIVATE_KEY; "auto" falls back to simulated without one
    SETTLEMENT_MODE: str = "auto"
    SETTLEMENT_FEE_RATE: Decimal = Decimal("0.005")
    SETTLEMENT_FEE_BPS: int = 50
    SETTLEMENT_GAS_ESTIMATE: Decimal = Decimal("0.02")
    SETTLEMENT_RECEIPT_TIMEOUT_SECONDS: int = 120
    TREASURY_PRIVATE_KEY: Optional[str] = None

    # RPC endpoints per network (public defaults)
    RPC_ETH: str = "https://eth.llamarpc.com"
    RPC_BSC: str = "https://bsc-dataseed.binance.org"
    RPC_BASE: str = "https://mainnet.base.org"

    # Settlement contract addresses per network
    SETTLEMENT_ETH: Optional[str] = None
    SETTLEMENT_BSC: Optional[str] = "0x7c831477A025e05DbaB31ab91A792c1006beb0c6"
    SETTLEMENT_BASE: Optional[str] = None

    # --- x402 protocol ---
    X402_NETWORK: str = "eip155:8453"
    X402_FACILITATOR_URL: Optional[str] = None
    X402_DEADLINE_SECONDS: int = 300
    X402_NONCE_TTL_SECONDS: int = 600
    X402_NONCE_SWEEP_INTERVAL_SECONDS: int = 60

    # Client agent
    X402_PRIVATE_KEY: Optional[str] = None
    X402_CLIENT_TIMEOUT_SECONDS: int = 30
    X402_CLIENT_MAX_RETRIES: int = 1

    # Audit log
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def rpc_urls(self) -> Dict[str, str]:
        """RPC endpoint per CAIP-2 network id."""
        return {
            "eip155:1": self.RPC_ETH,
            "eip155:56": self.RPC_BSC,
            "eip155:8453": self.RPC_BASE,
        }

    @property
    def settlement_addresses(self) -> Dict[str, str]:
        """Configured settlement contract per CAIP-2 network id."""
        addresses = {
            "eip155:1": self.SETTLEMENT_ETH,
            "eip155:56": self.SETTLEMENT_BSC,
            "eip155:8453": self.SETTLEMENT_BASE,
        }
        return {network: address for network, address in addresses.items() if address}


@lru_cache()  # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
