"""
errors.py — Typed exceptions for freelancer-escrow.

Every operation on an agreement or on the arbitration ledger either
commits completely or raises one of these with no state change, so
callers can catch EscrowError and retry with corrected parameters.
"""


class EscrowError(Exception):
    """Base exception for all freelancer-escrow errors."""


class AuthorizationError(EscrowError):
    """Caller is not the principal the operation requires."""


class StateError(EscrowError):
    """Operation invoked outside its required lifecycle state."""


class PaymentMismatchError(EscrowError):
    """Transferred value differs from amount plus commission, or overpays the agreement."""


class InvalidReferenceError(EscrowError):
    """Referenced dispute does not exist."""


class InsufficientCredentialError(EscrowError):
    """Voting principal does not hold enough spendable credential."""


class InsufficientAllowanceError(InsufficientCredentialError):
    """Arbitrator has not approved the escrow to spend enough credential."""


class DuplicateVoteError(EscrowError):
    """Principal has already voted on this dispute."""


class ArbitratorRegistrationError(EscrowError):
    """Principal is already registered as an arbitrator."""


class AuditIntegrityError(EscrowError):
    """Audit event chain does not verify."""


# ---------------------------------------------------------------------------
# Asset ledger (value-transfer substrate)
# ---------------------------------------------------------------------------

class AssetLedgerError(EscrowError):
    """Value transfer failed — nothing was moved."""


class InsufficientFundsError(AssetLedgerError):
    """Source account cannot cover the requested transfers."""


class ExchangeAuthError(AssetLedgerError):
    """Exchange API key missing, invalid, or expired."""


class ExchangeNetworkError(AssetLedgerError):
    """Unrecoverable network error after retries exhausted."""
