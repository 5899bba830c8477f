"""
freelancer-escrow — Milestone escrow with token-weighted dispute arbitration.

Public API:
    EscrowConfig                 — Environment-driven configuration
    EscrowAgreement              — Milestone escrow state machine
    ArbitrationLedger            — Shared arbitrator credential/reputation registry
    AssetLedger                  — Atomic value-transfer interface
    InMemoryAssetLedger          — Process-local asset ledger
    SettlementExchangeClient     — HTTP settlement exchange asset ledger
    EventLog                     — Hash-chained audit log of committed events
    verify_event_log             — Verify audit chain integrity
    hash_event                   — SHA-256 of canonical JSON
    AgreementState, DisputeState, VoteSide
    Dispute, ArbitratorRecord, AgreementSummary, Payout, TransferReceipt, EscrowEvent
    EscrowError                  — Base exception
    AuthorizationError           — Caller is not the required principal
    StateError                   — Operation outside its lifecycle state
    PaymentMismatchError         — Transferred value or amount is wrong
    InvalidReferenceError        — Unknown dispute id
    InsufficientCredentialError  — Not enough credential to vote
    InsufficientAllowanceError   — Escrow not approved to spend credential
    DuplicateVoteError           — Arbitrator already voted
    ArbitratorRegistrationError  — Arbitrator already registered
    AuditIntegrityError          — Audit chain does not verify
    AssetLedgerError             — Value transfer failed
    InsufficientFundsError       — Source cannot cover a transfer
    ExchangeAuthError            — Exchange credentials rejected
    ExchangeNetworkError         — Exchange unreachable after retries
"""

__version__ = "0.1.0"

from .arbitration import ArbitrationLedger
from .assets import AssetLedger, InMemoryAssetLedger
from .audit import EventLog, hash_event, verify_event_log
from .client import SettlementExchangeClient
from .config import EscrowConfig
from .errors import (
    ArbitratorRegistrationError,
    AssetLedgerError,
    AuditIntegrityError,
    AuthorizationError,
    DuplicateVoteError,
    EscrowError,
    ExchangeAuthError,
    ExchangeNetworkError,
    InsufficientAllowanceError,
    InsufficientCredentialError,
    InsufficientFundsError,
    InvalidReferenceError,
    PaymentMismatchError,
    StateError,
)
from .escrow import EscrowAgreement
from .models import (
    AgreementState,
    AgreementSummary,
    ArbitratorRecord,
    Dispute,
    DisputeState,
    EscrowEvent,
    Payout,
    TransferReceipt,
    VoteSide,
)

__all__ = [
    "__version__",
    "EscrowConfig",
    "EscrowAgreement",
    "ArbitrationLedger",
    "AssetLedger",
    "InMemoryAssetLedger",
    "SettlementExchangeClient",
    "EventLog",
    "hash_event",
    "verify_event_log",
    "AgreementState",
    "DisputeState",
    "VoteSide",
    "Dispute",
    "ArbitratorRecord",
    "AgreementSummary",
    "Payout",
    "TransferReceipt",
    "EscrowEvent",
    "EscrowError",
    "AuthorizationError",
    "StateError",
    "PaymentMismatchError",
    "InvalidReferenceError",
    "InsufficientCredentialError",
    "InsufficientAllowanceError",
    "DuplicateVoteError",
    "ArbitratorRegistrationError",
    "AuditIntegrityError",
    "AssetLedgerError",
    "InsufficientFundsError",
    "ExchangeAuthError",
    "ExchangeNetworkError",
]
