# app/core/config.py
from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, BaseModel # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


class PaywallRoute(BaseModel):
    """A protected route as configured through PAYWALL_ROUTES (JSON list)."""
    method: str = "GET"
    path: str
    amount: Decimal
    token: str = "USDC"
    token_mint: Optional[str] = None
    seller: Optional[str] = None  # falls back to PAYWALL_SELLER_ADDRESS
    description: str = "Protected resource"


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Payment Facilitator"
    LOG_LEVEL: str = "INFO"

    # Base URL advertised in X-Payment-Facilitator
    FACILITATOR_PUBLIC_URL: str = "http://localhost:8000"

    # Ledger selection and access
    FACILITATOR_CHAIN: str = "solana-devnet"
    SOLANA_RPC_URL: AnyHttpUrl = "https://api.devnet.solana.com"
    SOLANA_COMMITMENT: str = "confirmed"
    LEDGER_TIMEOUT_SECONDS: float = 10.0
    LEDGER_MAX_RETRIES: int = 3
    LEDGER_RETRY_BACKOFF_SECONDS: float = 0.5

    # Payment request lifecycle
    FACILITATOR_MEMO_PREFIX: str = "x402"
    FACILITATOR_PAYMENT_TIMEOUT_SECONDS: int = 300
    FACILITATOR_AMOUNT_TOLERANCE_BPS: Decimal = Decimal("1")  # 0.01%
    FACILITATOR_SWEEP_INTERVAL_SECONDS: int = 60
    FACILITATOR_RECORD_RETENTION_SECONDS: int = 3600

    # Quotas (per client IP, per minute)
    RATE_LIMIT_CREATE_PER_MINUTE: int = 60
    RATE_LIMIT_VERIFY_PER_MINUTE: int = 120

    # Audit trail
    AUDIT_ENABLED: bool = True
    AUDIT_LOG_PATH: str = "logs/facilitator_audit.jsonl"

    # Challenge middleware
    PAYWALL_ROUTES: List[PaywallRoute] = []
    PAYWALL_SELLER_ADDRESS: Optional[str] = None
    PAYWALL_FACILITATOR_URL: Optional[str] = None  # empty = in-process facilitator

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
