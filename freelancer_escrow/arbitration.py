"""
arbitration.py — Shared registry of arbitrators, their voting credential
and their reputation.

One ArbitrationLedger serves every escrow agreement. It is the only
owner of credential balances and reputation; agreements never cache
them. A single re-entrant lock serialises every read-modify-write, and an
escrow holds it through transaction() for the whole of a vote, so
concurrent votes in different agreements that spend the same
arbitrator's credential cannot interleave.

Credential flow:
  register_arbitrator()  grants `initial_credential` and reputation 1
  mint()                 operator funds an arbitrator outside any dispute
  approve()              arbitrator lets an escrow spend their credential
  consume_credential()   escrow spends credential when the arbitrator votes
  reward_credential()    escrow mints credential to a winning voter
  increase_reputation()  escrow bumps a winning voter's reputation
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .audit import EventLog, PendingEvent
from .config import EscrowConfig
from .errors import (
    ArbitratorRegistrationError,
    AuthorizationError,
    InsufficientAllowanceError,
    InsufficientCredentialError,
)
from .models import ArbitratorRecord

logger = logging.getLogger("freelancer_escrow.arbitration")

CONSUME = "consume"
REWARD = "reward"
REPUTATION = "reputation"


@dataclass(frozen=True)
class JournalEntry:
    """One applied ledger mutation, kept so an escrow can undo its own work."""
    op: str
    principal: str
    amount: int
    spender: str


class ArbitrationLedger:
    """
    Thread-safe arbitrator registry.

    Operations that an escrow performs accept an optional `events` buffer;
    when given, events are appended there and published by the escrow on
    commit instead of immediately.
    """

    def __init__(
        self,
        config: Optional[EscrowConfig] = None,
        event_log: Optional[EventLog] = None,
        name: str = "arbitration-ledger",
    ):
        self._config = config or EscrowConfig()
        self.event_log = event_log or EventLog()
        self.name = name
        self._arbitrators: list[str] = []
        self._balances: dict[str, int] = {}
        self._reputation: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self._escrows: set[str] = set()
        self._lock = threading.RLock()

    @property
    def config(self) -> EscrowConfig:
        return self._config

    @property
    def operator(self) -> str:
        return self._config.operator

    @contextmanager
    def transaction(self) -> Iterator["ArbitrationLedger"]:
        """
        Hold the ledger lock across a multi-step escrow operation.

        Every other reader and writer waits until the block exits, so
        credential consumed inside it, and any revert() of that consumption,
        is never observed half-done by another agreement.
        """
        with self._lock:
            yield self

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_arbitrator(self, principal: str) -> ArbitratorRecord:
        """
        Add `principal` to the arbitrator set with the initial credential
        grant and reputation 1.

        Raises:
            ArbitratorRegistrationError: Already registered. Re-registering
                would reset credential and reputation, so it is refused.
        """
        if not principal:
            raise ValueError("principal must be non-empty")
        with self._lock:
            if principal in self._balances:
                logger.warning("Refused re-registration of arbitrator %s", principal)
                raise ArbitratorRegistrationError(
                    f"{principal} is already a registered arbitrator"
                )
            self._arbitrators.append(principal)
            self._balances[principal] = self._config.initial_credential
            self._reputation[principal] = 1
            record = self._record(principal)

        self.event_log.append(
            "ArbitratorRegistered", self.name,
            arbitrator=principal, balance=record.balance, reputation=record.reputation,
        )
        logger.info("Arbitrator registered: %s balance=%d", principal, record.balance)
        return record

    def authorize_escrow(self, address: str) -> None:
        """Allow the escrow at `address` to consume and reward credential."""
        with self._lock:
            self._escrows.add(address)
        logger.debug("Escrow authorized on %s: %s", self.name, address)

    def mint(self, caller: str, principal: str, amount: int) -> None:
        """
        Operator funding: grant extra credential to a registered arbitrator.

        Recorded as CredentialMinted so the audit log keeps it apart from
        credential earned by winning votes.

        Raises:
            AuthorizationError: Caller is not the operator, or principal is
                                not a registered arbitrator.
        """
        if amount < 0:
            raise ValueError("amount must not be negative")
        if caller != self.operator:
            raise AuthorizationError("Only owner can mint credential")
        with self._lock:
            self._require_registered(principal)
            self._balances[principal] += amount
        self.event_log.append(
            "CredentialMinted", self.name, arbitrator=principal, amount=amount, minted_by=caller,
        )
        logger.info("Credential minted: %s +%d by %s", principal, amount, caller)

    # ------------------------------------------------------------------
    # Allowances
    # ------------------------------------------------------------------

    def approve(self, owner: str, spender: str, amount: int) -> None:
        """Let `spender` consume up to `amount` of `owner`'s credential."""
        if amount < 0:
            raise ValueError("amount must not be negative")
        with self._lock:
            self._allowances[(owner, spender)] = amount
        self.event_log.append(
            "Approval", self.name, owner=owner, spender=spender, amount=amount,
        )

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._allowances.get((owner, spender), 0)

    # ------------------------------------------------------------------
    # Escrow-driven mutations
    # ------------------------------------------------------------------

    def consume_credential(
        self,
        principal: str,
        amount: int,
        spender: str,
        events: Optional[list[PendingEvent]] = None,
    ) -> JournalEntry:
        """
        Atomically spend `amount` of `principal`'s credential on behalf of
        `spender`, decrementing both the allowance and the balance.

        Raises:
            AuthorizationError:          Spender is not an authorized escrow,
                                         or principal is not an arbitrator.
            InsufficientCredentialError: Balance below `amount`.
            InsufficientAllowanceError:  Allowance below `amount`.
        """
        with self._lock:
            self._require_escrow(spender)
            self._require_registered(principal)
            balance = self._balances[principal]
            if balance < amount or balance <= 0:
                raise InsufficientCredentialError(
                    f"{principal} holds {balance} credential, needs {amount}"
                )
            allowed = self._allowances.get((principal, spender), 0)
            if allowed < amount:
                raise InsufficientAllowanceError(
                    f"{principal} approved {allowed} credential for {spender}, needs {amount}"
                )
            self._allowances[(principal, spender)] = allowed - amount
            self._balances[principal] = balance - amount

        self._emit(events, "CredentialConsumed", arbitrator=principal, spender=spender, amount=amount)
        return JournalEntry(CONSUME, principal, amount, spender)

    def reward_credential(
        self,
        principal: str,
        amount: int,
        spender: str,
        events: Optional[list[PendingEvent]] = None,
    ) -> JournalEntry:
        """Mint `amount` credential to `principal`. Only authorized escrows may call."""
        with self._lock:
            self._require_escrow(spender)
            self._require_registered(principal)
            self._balances[principal] += amount

        self._emit(events, "CredentialRewarded", arbitrator=principal, amount=amount)
        return JournalEntry(REWARD, principal, amount, spender)

    def increase_reputation(
        self,
        principal: str,
        spender: str,
        events: Optional[list[PendingEvent]] = None,
    ) -> JournalEntry:
        """Increment `principal`'s reputation by one."""
        with self._lock:
            self._require_escrow(spender)
            self._require_registered(principal)
            self._reputation[principal] += 1
            reputation = self._reputation[principal]

        self._emit(events, "ReputationIncreased", arbitrator=principal, reputation=reputation)
        return JournalEntry(REPUTATION, principal, 1, spender)

    def revert(self, journal: Iterable[JournalEntry]) -> None:
        """
        Undo entries produced by a single escrow operation, newest first.
        Only used when that operation's final value transfer failed, so its
        events were never published. Call it inside the same transaction()
        as the mutations it undoes.
        """
        with self._lock:
            for entry in reversed(list(journal)):
                if entry.op == CONSUME:
                    self._balances[entry.principal] += entry.amount
                    key = (entry.principal, entry.spender)
                    self._allowances[key] = self._allowances.get(key, 0) + entry.amount
                elif entry.op == REWARD:
                    self._balances[entry.principal] -= entry.amount
                elif entry.op == REPUTATION:
                    self._reputation[entry.principal] -= entry.amount
        logger.warning("Reverted ledger journal for a failed escrow operation")

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def is_arbitrator(self, principal: str) -> bool:
        with self._lock:
            return principal in self._balances

    def balance_of(self, principal: str) -> int:
        with self._lock:
            return self._balances.get(principal, 0)

    def reputation_of(self, principal: str) -> int:
        with self._lock:
            return self._reputation.get(principal, 0)

    def arbitrators(self) -> list[str]:
        """All registered arbitrators in registration order."""
        with self._lock:
            return list(self._arbitrators)

    def arbitrator_count(self, exclude: Iterable[str] = ()) -> int:
        excluded = set(exclude)
        with self._lock:
            return sum(1 for a in self._arbitrators if a not in excluded)

    def get_record(self, principal: str) -> ArbitratorRecord:
        with self._lock:
            self._require_registered(principal)
            return self._record(principal)

    # ------------------------------------------------------------------
    # Internal helpers (call with the lock held)
    # ------------------------------------------------------------------

    def _record(self, principal: str) -> ArbitratorRecord:
        return ArbitratorRecord(
            principal=principal,
            balance=self._balances[principal],
            reputation=self._reputation[principal],
        )

    def _require_registered(self, principal: str) -> None:
        if principal not in self._balances:
            raise AuthorizationError(f"{principal} is not a registered arbitrator")

    def _require_escrow(self, spender: str) -> None:
        if spender not in self._escrows:
            raise AuthorizationError(f"{spender} is not an authorized escrow")

    def _emit(self, events: Optional[list[PendingEvent]], name: str, **args) -> None:
        if events is None:
            self.event_log.append(name, self.name, **args)
        else:
            events.append((name, self.name, args))
