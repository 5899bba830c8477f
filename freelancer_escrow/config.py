"""
config.py — Environment-driven configuration for freelancer-escrow.

Every setting has a default so an agreement can be opened with
EscrowConfig() alone. The exchange settings are only read by the
SettlementExchangeClient asset ledger.
"""

import os
from typing import Optional

from pydantic import BaseModel, field_validator

CORP_ADDRESS = "0x4F259744634C65F2e2cFe70bAF3C0EA04640631b"


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "")
    return int(raw) if raw else None


class EscrowConfig(BaseModel):
    """
    Configuration shared by escrow agreements and the arbitration ledger.

    Reads from environment variables by default:
        FESCROW_COMMISSION_RATE     — percent added on top of each deposit (default: 5)
        FESCROW_FEE_RECIPIENT       — principal receiving commission (default: corp)
        FESCROW_OPERATOR            — principal allowed to mint credential (default: corp)
        FESCROW_INITIAL_CREDENTIAL  — credential granted on registration (default: 1)
        FESCROW_VOTE_COST           — credential consumed per vote (default: 1)
        FESCROW_REWARD_BONUS        — net credential gain for a winning vote (default: 1)
        FESCROW_MAJORITY_THRESHOLD  — fixed resolving vote count (default: pool majority)
        FESCROW_EXCHANGE_URL        — settlement exchange base URL
        FESCROW_API_KEY             — exchange API key
        FESCROW_NETWORK             — "sandbox", "devnet" or "mainnet" (default: sandbox)
        FESCROW_TIMEOUT             — HTTP timeout in seconds (default: 30)
        FESCROW_MAX_RETRIES         — attempts per exchange call (default: 3)
    """

    commission_rate: int = int(os.getenv("FESCROW_COMMISSION_RATE", "5"))
    fee_recipient: str = os.getenv("FESCROW_FEE_RECIPIENT", CORP_ADDRESS)
    operator: str = os.getenv("FESCROW_OPERATOR", CORP_ADDRESS)
    initial_credential: int = int(os.getenv("FESCROW_INITIAL_CREDENTIAL", "1"))
    vote_cost: int = int(os.getenv("FESCROW_VOTE_COST", "1"))
    reward_bonus: int = int(os.getenv("FESCROW_REWARD_BONUS", "1"))
    majority_threshold: Optional[int] = _optional_int("FESCROW_MAJORITY_THRESHOLD")

    exchange_url: str = os.getenv(
        "FESCROW_EXCHANGE_URL", "https://sandbox.a2a-se.dev"
    )
    api_key: str = os.getenv("FESCROW_API_KEY", "")
    network: str = os.getenv("FESCROW_NETWORK", "sandbox")
    timeout_seconds: int = int(os.getenv("FESCROW_TIMEOUT", "30"))
    max_retries: int = int(os.getenv("FESCROW_MAX_RETRIES", "3"))

    @field_validator("commission_rate")
    @classmethod
    def validate_commission_rate(cls, v: int) -> int:
        if v < 0 or v > 100:
            raise ValueError("commission_rate must be between 0 and 100")
        return v

    @field_validator("fee_recipient", "operator")
    @classmethod
    def validate_principal(cls, v: str) -> str:
        if not v:
            raise ValueError("principals must be non-empty")
        return v

    @field_validator("initial_credential", "reward_bonus")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("credential amounts must not be negative")
        return v

    @field_validator("vote_cost")
    @classmethod
    def validate_vote_cost(cls, v: int) -> int:
        if v < 1:
            raise ValueError("vote_cost must be at least 1")
        return v

    @field_validator("majority_threshold")
    @classmethod
    def validate_majority_threshold(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("majority_threshold must be at least 1 when set")
        return v

    @field_validator("network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        allowed = {"sandbox", "mainnet", "devnet"}
        if v not in allowed:
            raise ValueError(f"network must be one of {allowed}, got '{v}'")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1 or v > 300:
            raise ValueError("timeout_seconds must be between 1 and 300")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("max_retries must be between 1 and 10")
        return v

    def commission(self, amount: int) -> int:
        """Commission owed on a milestone of `amount` base units (floored)."""
        return amount * self.commission_rate // 100
