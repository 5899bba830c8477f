"""
escrow.py — Milestone escrow between a client and a freelancer.

One EscrowAgreement per (client, freelancer, total payment, milestone
count). Each milestone runs

    AWAITING_DEPOSIT -> AWAITING_DELIVERY -> AWAITING_CONFIRMATION
        -> AWAITING_DEPOSIT (next milestone) | COMPLETED

and either party may raise a dispute against the active milestone.
Registered arbitrators then spend credential to vote; the first side to
reach the dispute's threshold wins and the held funds are released to
the freelancer (CONFIRMED) or refunded to the client (DISSOLVED).

Every public operation runs inside _operation(): it holds the agreement
lock, validates, mutates local and arbitration-ledger state, and moves
value last. If anything raises, local state is restored from a snapshot,
the arbitration journal is reverted and no event is published.
vote_on_dispute() also holds the arbitration ledger's transaction()
for its whole run, so no other agreement sees a credential spend that
is later undone. Winners are rewarded only after the release transfer
has landed.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union
from uuid import uuid4

from .arbitration import ArbitrationLedger, JournalEntry
from .assets import AssetLedger
from .audit import EventLog, PendingEvent
from .config import EscrowConfig
from .errors import (
    AuthorizationError,
    DuplicateVoteError,
    InvalidReferenceError,
    PaymentMismatchError,
    StateError,
)
from .models import (
    ACTIVE_MILESTONE_STATES,
    AgreementState,
    AgreementSummary,
    Dispute,
    DisputeState,
    Payout,
    TransferReceipt,
    VoteSide,
)

logger = logging.getLogger("freelancer_escrow.escrow")

# Fields restored when an operation fails part-way.
_SNAPSHOT_FIELDS = (
    "_state",
    "_payment_made",
    "_milestones_paid",
    "_held_amount",
    "_held_commission",
    "_completion_message",
    "_disputes",
    "_sequence",
)


@dataclass
class _Operation:
    """Events and ledger journal collected while one operation runs."""
    name: str
    events: list[PendingEvent] = field(default_factory=list)
    journal: list[JournalEntry] = field(default_factory=list)
    receipt: Optional[TransferReceipt] = None


class EscrowAgreement:
    """
    Escrow engine for a single client/freelancer agreement.

    Usage:
        ledger = ArbitrationLedger(config)
        assets = InMemoryAssetLedger()
        agreement = EscrowAgreement(
            client="0xC", freelancer="0xF", total_payment=10 * ETHER,
            milestone_count=2, arbitration=ledger, assets=assets,
        )
        agreement.deposit("0xC", amount, value=agreement.required_value(amount))
        agreement.complete_milestone("0xF", "first draft delivered")
        agreement.confirm_and_pay("0xC")

    Every caller argument is the authenticated principal making the call.
    """

    def __init__(
        self,
        client: str,
        freelancer: str,
        total_payment: int,
        milestone_count: int,
        arbitration: ArbitrationLedger,
        assets: AssetLedger,
        config: Optional[EscrowConfig] = None,
        project_description: str = "",
        address: Optional[str] = None,
        event_log: Optional[EventLog] = None,
    ):
        if not client or not freelancer:
            raise ValueError("client and freelancer must be non-empty principals")
        if client == freelancer:
            raise ValueError("client and freelancer must be different principals")
        if total_payment <= 0:
            raise ValueError("total_payment must be positive")
        if milestone_count < 1:
            raise ValueError("milestone_count must be at least 1")

        self._config = config or arbitration.config
        self.address = address or f"escrow-{uuid4().hex[:12]}"
        self.client = client
        self.freelancer = freelancer
        self.fee_recipient = self._config.fee_recipient
        self.commission_rate = self._config.commission_rate
        self.total_payment = total_payment
        self.milestone_count = milestone_count
        self.project_description = project_description

        self._arbitration = arbitration
        self._assets = assets
        self.event_log = event_log or arbitration.event_log

        self._state = AgreementState.AWAITING_DEPOSIT
        self._payment_made = 0
        self._milestones_paid = 0
        self._held_amount = 0
        self._held_commission = 0
        self._completion_message = ""
        self._disputes: list[Dispute] = []
        self._sequence = 0
        self._lock = threading.RLock()

        arbitration.authorize_escrow(self.address)
        logger.info(
            "Agreement opened: address=%s client=%s freelancer=%s total=%d milestones=%d",
            self.address, client, freelancer, total_payment, milestone_count,
        )

    # ------------------------------------------------------------------
    # Milestone lifecycle
    # ------------------------------------------------------------------

    def commission(self, amount: int) -> int:
        """floor(amount * commission_rate / 100)."""
        return self._config.commission(amount)

    def required_value(self, amount: int) -> int:
        """Exact value a client must transfer to deposit `amount`."""
        return amount + self.commission(amount)

    def deposit(self, caller: str, amount: int, value: int) -> TransferReceipt:
        """
        Fund the next milestone with `amount`, transferring `value` from the
        client into escrow custody.

        Raises:
            AuthorizationError:   Caller is not the client.
            StateError:           No milestone awaits a deposit, or a dispute is open.
            PaymentMismatchError: `value` != amount + commission, the deposit
                                  overpays the agreement, or the final milestone
                                  does not cover the exact remainder.
        """
        with self._operation("deposit") as op:
            self._require_caller(caller, self.client, "client")
            self._require_no_open_dispute("deposit")
            if self.is_terminal or self._state not in (
                AgreementState.AWAITING_DEPOSIT, AgreementState.CONFIRMED,
            ):
                raise StateError(f"Cannot deposit in state {self._state.value}")

            remaining = self.total_payment - self._payment_made
            if amount <= 0:
                raise PaymentMismatchError("Deposit amount must be positive")
            if amount > remaining:
                raise PaymentMismatchError(
                    f"Deposit of {amount} exceeds remaining payment {remaining}"
                )
            if self._milestones_paid == self.milestone_count - 1 and amount != remaining:
                raise PaymentMismatchError(
                    f"Final milestone must deposit the remaining {remaining}, got {amount}"
                )
            commission = self.commission(amount)
            if value != amount + commission:
                raise PaymentMismatchError(
                    f"Incorrect payment amount: expected {amount + commission}, got {value}"
                )

            self._held_amount = amount
            self._held_commission = commission
            self._completion_message = ""
            self._state = AgreementState.AWAITING_DELIVERY
            self._emit(op, "DepositMade", client=self.client, freelancer=self.freelancer, amount=amount)

            self._settle(op, self.client, [Payout(self.address, value)])

        logger.info(
            "Deposit made: agreement=%s milestone=%d amount=%d commission=%d",
            self.address, self.current_milestone, amount, commission,
        )
        return op.receipt

    def complete_milestone(self, caller: str, message: str) -> None:
        """Freelancer marks the funded milestone as delivered."""
        with self._operation("complete_milestone") as op:
            self._require_caller(caller, self.freelancer, "freelancer")
            self._require_state(AgreementState.AWAITING_DELIVERY)

            self._completion_message = message
            self._state = AgreementState.AWAITING_CONFIRMATION
            self._emit(
                op, "MilestoneCompleted",
                freelancer=self.freelancer, client=self.client, message=message,
            )

        logger.info("Milestone %d delivered: agreement=%s", self.current_milestone, self.address)

    def confirm_and_pay(self, caller: str) -> TransferReceipt:
        """
        Client accepts the delivered milestone, releasing the held amount to
        the freelancer and the commission to the fee recipient.
        """
        with self._operation("confirm_and_pay") as op:
            self._require_caller(caller, self.client, "client")
            self._require_state(AgreementState.AWAITING_CONFIRMATION)
            self._require_no_open_dispute("confirm payment")

            payouts = self._release_milestone(op)
            if self._payment_made == self.total_payment:
                self._state = AgreementState.COMPLETED
                self._emit(
                    op, "DeliveryConfirmed",
                    client=self.client, freelancer=self.freelancer, amount=self._payment_made,
                )
                self._emit(op, "ContractCompleted", total_payment=self.total_payment)
            else:
                self._state = AgreementState.AWAITING_DEPOSIT

            self._settle(op, self.address, payouts)

        logger.info(
            "Milestone paid: agreement=%s paid=%d/%d state=%s",
            self.address, self._payment_made, self.total_payment, self._state.value,
        )
        return op.receipt

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def raise_dispute(self, caller: str, message: str) -> int:
        """
        Escalate the active milestone to arbitration. Returns the new
        dispute's 1-based id. The primary state is left untouched.
        """
        with self._operation("raise_dispute") as op:
            if caller not in (self.client, self.freelancer):
                raise AuthorizationError("Only client or freelancer can raise a dispute")
            if self._state not in ACTIVE_MILESTONE_STATES:
                raise StateError(f"Cannot raise a dispute in state {self._state.value}")
            self._require_no_open_dispute("raise a dispute")

            dispute = Dispute(
                dispute_id=len(self._disputes) + 1,
                raised_by=caller,
                prior_state=self._state,
                message=message,
                milestone=self.current_milestone,
                threshold=self._majority_threshold(),
            )
            self._disputes.append(dispute)
            self._emit(
                op, "DisputeRaised",
                id=dispute.dispute_id, raised_by=caller,
                prior_state=dispute.prior_state, message=message,
            )

        logger.info(
            "Dispute %d raised: agreement=%s by=%s threshold=%d",
            dispute.dispute_id, self.address, caller, dispute.threshold,
        )
        return dispute.dispute_id

    def vote_on_dispute(
        self,
        caller: str,
        dispute_id: int,
        side: Union[VoteSide, int],
    ) -> Optional[VoteSide]:
        """
        Cast one credential-weighted vote. Returns the winning side if this
        vote resolved the dispute, otherwise None.

        Raises:
            AuthorizationError:          Caller is a party, or not an arbitrator.
            InvalidReferenceError:       No dispute with this id.
            StateError:                  Dispute already resolved.
            DuplicateVoteError:          Caller already voted on this dispute.
            InsufficientCredentialError: Caller lacks credential or allowance.
        """
        side = VoteSide(side)
        with self._operation("vote_on_dispute", hold_ledger=True) as op:
            if caller in (self.client, self.freelancer):
                raise AuthorizationError("Client and freelancer cannot vote")
            dispute = self._dispute(dispute_id)
            if not dispute.is_open or self._state not in ACTIVE_MILESTONE_STATES:
                raise StateError(f"Dispute {dispute_id} is not open for voting")
            if not self._arbitration.is_arbitrator(caller):
                raise AuthorizationError(f"{caller} is not a registered arbitrator")
            if dispute.has_voted(caller):
                logger.warning("Replayed vote rejected: dispute=%d voter=%s", dispute_id, caller)
                raise DuplicateVoteError(f"{caller} already voted on dispute {dispute_id}")

            cost = self._config.vote_cost
            op.journal.append(
                self._arbitration.consume_credential(caller, cost, self.address, op.events)
            )
            if side is VoteSide.FREELANCER:
                dispute.votes_for_freelancer += cost
            else:
                dispute.votes_for_client += cost
            dispute.voters[caller] = side
            self._emit(op, "VoteCast", id=dispute_id, voter=caller, side=side, amount=cost)

            resolved = None
            if dispute.tally(side) >= dispute.threshold:
                self._resolve(op, dispute, side)
                resolved = side

        logger.info(
            "Vote cast: agreement=%s dispute=%d voter=%s side=%s tally=%d/%d",
            self.address, dispute_id, caller, side.name,
            dispute.votes_for_freelancer, dispute.votes_for_client,
        )
        return resolved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgreementState:
        """
        Primary lifecycle state. A dispute won by the freelancer on the
        last milestone leaves the state at CONFIRMED rather than COMPLETED;
        CONFIRMED together with is_terminal means the agreement is complete.
        """
        return self._state

    @property
    def payment_made(self) -> int:
        return self._payment_made

    @property
    def milestones_paid(self) -> int:
        return self._milestones_paid

    @property
    def current_milestone(self) -> int:
        """1-based number of the milestone being funded or worked on."""
        return min(self._milestones_paid + 1, self.milestone_count)

    @property
    def held_amount(self) -> int:
        return self._held_amount

    @property
    def held_commission(self) -> int:
        return self._held_commission

    @property
    def completion_message(self) -> str:
        return self._completion_message

    @property
    def is_terminal(self) -> bool:
        """
        True once no further deposit, payment or vote can change the
        agreement: COMPLETED, DISSOLVED, or CONFIRMED with the total paid.
        """
        if self._state in (AgreementState.COMPLETED, AgreementState.DISSOLVED):
            return True
        return self._state is AgreementState.CONFIRMED and self._payment_made == self.total_payment

    @property
    def open_dispute(self) -> Optional[Dispute]:
        with self._lock:
            current = self._current_dispute()
            return copy.deepcopy(current) if current else None

    @property
    def disputed(self) -> bool:
        return self._current_dispute() is not None

    @property
    def dispute_count(self) -> int:
        return len(self._disputes)

    @property
    def disputes(self) -> list[Dispute]:
        with self._lock:
            return copy.deepcopy(self._disputes)

    def get_dispute(self, dispute_id: int) -> Dispute:
        with self._lock:
            return copy.deepcopy(self._dispute(dispute_id))

    def disputes_raised_by(self, principal: str) -> list[Dispute]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._disputes if d.raised_by == principal]

    def has_voted(self, dispute_id: int, principal: str) -> bool:
        with self._lock:
            return self._dispute(dispute_id).has_voted(principal)

    def escrow_balance(self) -> int:
        """Value currently custodied at the agreement's address."""
        return self._assets.balance_of(self.address)

    def summary(self) -> AgreementSummary:
        """
        Point-in-time view. `settled` mirrors is_terminal, so a CONFIRMED
        agreement paid in full reads as settled.
        """
        with self._lock:
            return AgreementSummary(
                address=self.address,
                client=self.client,
                freelancer=self.freelancer,
                fee_recipient=self.fee_recipient,
                project_description=self.project_description,
                total_payment=self.total_payment,
                commission_rate=self.commission_rate,
                milestone_count=self.milestone_count,
                milestones_paid=self._milestones_paid,
                payment_made=self._payment_made,
                state=self._state,
                disputed=self._current_dispute() is not None,
                held_amount=self._held_amount,
                held_commission=self._held_commission,
                dispute_count=len(self._disputes),
                settled=self.is_terminal,
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str, hold_ledger: bool = False) -> Iterator[_Operation]:
        ledger = self._arbitration.transaction() if hold_ledger else nullcontext()
        with self._lock, ledger:
            snapshot = {f: copy.deepcopy(getattr(self, f)) for f in _SNAPSHOT_FIELDS}
            op = _Operation(name)
            try:
                yield op
            except Exception:
                for f, value in snapshot.items():
                    setattr(self, f, value)
                if op.journal:
                    self._arbitration.revert(op.journal)
                raise
            self.event_log.publish(op.events)

    def _emit(self, op: _Operation, name: str, **args) -> None:
        op.events.append((name, self.address, args))

    def _settle(self, op: _Operation, source: str, payouts: list[Payout]) -> None:
        self._sequence += 1
        reference = f"{self.address}:{op.name}:{self._sequence}"
        op.receipt = self._assets.settle(source, payouts, reference)

    def _require_caller(self, caller: str, expected: str, role: str) -> None:
        if caller != expected:
            raise AuthorizationError(f"Only {role} can perform this action")

    def _require_state(self, expected: AgreementState) -> None:
        if self._state is not expected:
            raise StateError(
                f"Invalid state for this action: expected {expected.value}, "
                f"agreement is {self._state.value}"
            )

    def _require_no_open_dispute(self, action: str) -> None:
        current = self._current_dispute()
        if current is not None:
            raise StateError(f"Cannot {action} while dispute {current.dispute_id} is open")

    def _current_dispute(self) -> Optional[Dispute]:
        if self._disputes and self._disputes[-1].is_open:
            return self._disputes[-1]
        return None

    def _dispute(self, dispute_id: int) -> Dispute:
        if not 1 <= dispute_id <= len(self._disputes):
            raise InvalidReferenceError(f"Invalid dispute ID {dispute_id}")
        return self._disputes[dispute_id - 1]

    def _majority_threshold(self) -> int:
        if self._config.majority_threshold is not None:
            return self._config.majority_threshold
        eligible = self._arbitration.arbitrator_count(exclude=(self.client, self.freelancer))
        return eligible // 2 + 1

    def _release_milestone(self, op: _Operation) -> list[Payout]:
        """Book the held milestone as paid and return the payouts that release it."""
        amount, commission = self._held_amount, self._held_commission
        self._payment_made += amount
        self._milestones_paid += 1
        self._held_amount = 0
        self._held_commission = 0
        self._emit(op, "PaymentMade", freelancer=self.freelancer, amount=amount)
        self._emit(op, "CommissionPaid", fee_recipient=self.fee_recipient, amount=commission)
        return [Payout(self.freelancer, amount), Payout(self.fee_recipient, commission)]

    def _resolve(self, op: _Operation, dispute: Dispute, winner: VoteSide) -> None:
        dispute.status = DisputeState.RESOLVED
        dispute.winner = winner

        if winner is VoteSide.FREELANCER:
            self._state = AgreementState.CONFIRMED
            self._emit(
                op, "DisputeResolved",
                id=dispute.dispute_id, winner=winner, new_state=self._state,
                message=f"Dispute {dispute.dispute_id} resolved in favour of the freelancer",
            )
            self._emit(
                op, "DeliveryConfirmed",
                client=self.client, freelancer=self.freelancer, amount=self._held_amount,
            )
            payouts = self._release_milestone(op)
            if self._payment_made == self.total_payment:
                self._emit(op, "ContractCompleted", total_payment=self.total_payment)
            recipient = self.freelancer
        else:
            refund = self._held_amount + self._held_commission
            self._held_amount = 0
            self._held_commission = 0
            self._state = AgreementState.DISSOLVED
            self._emit(
                op, "DisputeResolved",
                id=dispute.dispute_id, winner=winner, new_state=self._state,
                message=f"Dispute {dispute.dispute_id} resolved in favour of the client",
            )
            self._emit(op, "DepositRefunded", client=self.client, amount=refund)
            payouts = [Payout(self.client, refund)]
            recipient = self.client

        self._settle(op, self.address, payouts)

        # Rewards follow the release and are never reverted.
        reward = self._config.vote_cost + self._config.reward_bonus
        for voter in dispute.voters_for(winner):
            self._arbitration.reward_credential(voter, reward, self.address, op.events)
            self._arbitration.increase_reputation(voter, self.address, op.events)

        logger.info(
            "Dispute %d resolved: agreement=%s winner=%s funds_to=%s rewarded=%d",
            dispute.dispute_id, self.address, winner.name, recipient,
            len(dispute.voters_for(winner)),
        )
