"""
Configuration management for MedRelay
Store, ledger, session and logging settings
"""

import secrets
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field

from .constants import LedgerDefaults, RetryDefaults


class MedRelayConfig(BaseSettings):
    """Consent ledger configuration settings"""

    # Relational store
    database_url: str = Field(default="sqlite:///medrelay.db")

    # Ledger binding; no contract address means anchoring is disabled
    ledger_rpc_url: str = Field(default=LedgerDefaults.RPC_URL)
    ledger_contract_address: Optional[str] = Field(default=None)
    ledger_operator_private_key: Optional[str] = Field(
        default=None,
        description="Signs transactions locally; otherwise the node account signs"
    )
    ledger_sender_address: Optional[str] = Field(default=None)
    ledger_request_timeout_seconds: float = Field(default=LedgerDefaults.REQUEST_TIMEOUT_SECONDS)
    ledger_wait_for_receipt: bool = Field(default=True)
    ledger_receipt_timeout_seconds: float = Field(default=LedgerDefaults.RECEIPT_TIMEOUT_SECONDS)

    # Anchoring policy
    anchor_rejections: bool = Field(default=False, description="Also anchor rejected consents")
    reconcile_batch_size: int = Field(default=100)
    reconcile_claim_timeout_seconds: int = Field(default=300)

    # Session recovery
    session_retry_max_attempts: int = Field(default=RetryDefaults.MAX_ATTEMPTS)
    session_retry_backoff_seconds: float = Field(default=RetryDefaults.BACKOFF_SECONDS)

    # Session tokens
    jwt_secret_key: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiry_minutes: int = Field(default=60)
    bcrypt_rounds: int = Field(default=12)

    # Environment-specific overrides
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "MEDRELAY_", "case_sensitive": False}

    @property
    def ledger_enabled(self) -> bool:
        """Anchoring is enabled once a contract address is configured"""
        return bool(self.ledger_contract_address)


# Global configuration instance
config = MedRelayConfig()


def get_config() -> MedRelayConfig:
    """Get the global configuration instance"""
    return config
