"""
models.py — Shared enums and dataclasses for freelancer-escrow.

These are the data structures passed between the escrow engine, the
arbitration ledger, and the asset ledger. Keeping them in one file
avoids circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class AgreementState(str, Enum):
    """Lifecycle of the active milestone of an agreement."""
    AWAITING_DEPOSIT = "awaiting_deposit"
    AWAITING_DELIVERY = "awaiting_delivery"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"        # milestone released by arbitration
    DISSOLVED = "dissolved"        # client won a dispute, funds refunded
    COMPLETED = "completed"        # every unit of total payment released


ACTIVE_MILESTONE_STATES = (
    AgreementState.AWAITING_DELIVERY,
    AgreementState.AWAITING_CONFIRMATION,
)


class DisputeState(str, Enum):
    RAISED = "raised"
    RESOLVED = "resolved"


class VoteSide(int, Enum):
    """Side an arbitrator votes for."""
    FREELANCER = 1
    CLIENT = 2


@dataclass(frozen=True)
class Payout:
    """One leg of an atomic settlement batch."""
    recipient: str
    amount: int


@dataclass
class TransferReceipt:
    """
    Returned by AssetLedger.settle(). Confirms that every payout in the
    batch moved, or none did.
    """
    reference: str
    source: str
    payouts: list[Payout]
    tx_hash: str = ""
    settled_at: str = ""

    @property
    def total(self) -> int:
        return sum(p.amount for p in self.payouts)


@dataclass
class Dispute:
    """
    An escalation raised against the active milestone.

    `prior_state` is the agreement state captured when the dispute was
    raised; `voters` records each arbitrator's side so replayed votes are
    rejected and winners can be rewarded after resolution.
    """
    dispute_id: int
    raised_by: str
    prior_state: AgreementState
    message: str
    milestone: int
    threshold: int
    votes_for_freelancer: int = 0
    votes_for_client: int = 0
    status: DisputeState = DisputeState.RAISED
    winner: Optional[VoteSide] = None
    voters: dict[str, VoteSide] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status is DisputeState.RAISED

    def has_voted(self, principal: str) -> bool:
        return principal in self.voters

    def tally(self, side: VoteSide) -> int:
        if side is VoteSide.FREELANCER:
            return self.votes_for_freelancer
        return self.votes_for_client

    def voters_for(self, side: VoteSide) -> list[str]:
        """Arbitrators who voted for `side`, in voting order."""
        return [p for p, s in self.voters.items() if s is side]


@dataclass(frozen=True)
class ArbitratorRecord:
    """Read-only view of one arbitrator in the arbitration ledger."""
    principal: str
    balance: int
    reputation: int


@dataclass
class AgreementSummary:
    """
    Point-in-time view of an agreement, for dashboards and audits.

    `settled` is True when nothing can change the agreement any more,
    including the CONFIRMED state reached when a dispute on the last
    milestone goes to the freelancer.
    """
    address: str
    client: str
    freelancer: str
    fee_recipient: str
    project_description: str
    total_payment: int
    commission_rate: int
    milestone_count: int
    milestones_paid: int
    payment_made: int
    state: AgreementState
    disputed: bool
    held_amount: int = 0
    held_commission: int = 0
    dispute_count: int = 0
    settled: bool = False

    @property
    def remaining(self) -> int:
        return self.total_payment - self.payment_made

    def __str__(self) -> str:
        lines = [
            "=== Escrow Agreement Summary ===",
            f"  Agreement         : {self.address}",
            f"  Client            : {self.client}",
            f"  Freelancer        : {self.freelancer}",
            f"  State             : {self.state.value}"
            + (" (disputed)" if self.disputed else "")
            + (" (settled)" if self.settled else ""),
            f"  Milestones paid   : {self.milestones_paid}/{self.milestone_count}",
            f"  Paid / total      : {self.payment_made}/{self.total_payment}",
            f"  Held in escrow    : {self.held_amount} + {self.held_commission} commission",
            f"  Disputes raised   : {self.dispute_count}",
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Audit event models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EscrowEvent:
    """
    Immutable record of one committed transition or fund movement.

    Events are hash-chained: `event_hash` covers the canonical JSON of the
    event including `prev_hash`, so auditors can detect any rewritten or
    dropped record with verify_event_log().
    """
    sequence: int
    name: str
    source: str
    args: dict
    prev_hash: str
    event_hash: str
