"""
audit.py — Hash-chained audit log of escrow and arbitration events.

Agreements and the arbitration ledger never publish an event for work
that did not commit. Each operation collects its events in a buffer and
hands them to the EventLog only after every check, mutation and value
transfer has succeeded:

  1. EventLog.publish()  — appends a committed batch, chaining each
                           event's SHA-256 to its predecessor.
  2. hash_event()        — deterministic SHA-256 of canonical JSON.
  3. verify_event_log()  — re-hashes a sequence of events and raises
                           on the first broken link.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .errors import AuditIntegrityError
from .models import EscrowEvent

logger = logging.getLogger("freelancer_escrow.audit")

GENESIS_HASH = "0" * 64

PendingEvent = tuple[str, str, dict]


class EventLog:
    """
    Append-only, thread-safe event log shared by any number of agreements.

    Subscribers receive every committed event in order; use them to feed
    external auditors or dashboards.
    """

    def __init__(self) -> None:
        self._events: list[EscrowEvent] = []
        self._subscribers: list[Callable[[EscrowEvent], None]] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def head_hash(self) -> str:
        with self._lock:
            return self._events[-1].event_hash if self._events else GENESIS_HASH

    def subscribe(self, callback: Callable[[EscrowEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def append(self, name: str, source: str, **args: Any) -> EscrowEvent:
        """Publish a single event. Shorthand for publish([(name, source, args)])."""
        return self.publish([(name, source, args)])[0]

    def publish(self, pending: Iterable[PendingEvent]) -> list[EscrowEvent]:
        """Chain and append a committed batch of (name, source, args) tuples."""
        committed: list[EscrowEvent] = []
        with self._lock:
            prev = self._events[-1].event_hash if self._events else GENESIS_HASH
            for name, source, args in pending:
                clean_args = {k: _serialize_value(v) for k, v in args.items()}
                sequence = len(self._events)
                event_hash = hash_event(
                    _canonical(sequence, name, source, clean_args, prev)
                )
                event = EscrowEvent(
                    sequence=sequence,
                    name=name,
                    source=source,
                    args=clean_args,
                    prev_hash=prev,
                    event_hash=event_hash,
                )
                self._events.append(event)
                committed.append(event)
                prev = event_hash
            subscribers = list(self._subscribers)

        for event in committed:
            logger.debug("Event %d %s from %s", event.sequence, event.name, event.source)
            for callback in subscribers:
                try:
                    callback(event)
                except Exception:
                    logger.exception(
                        "Audit subscriber %r failed on event %d", callback, event.sequence
                    )
        return committed

    def events(
        self,
        name: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[EscrowEvent]:
        """Committed events, optionally filtered by event name and/or source."""
        with self._lock:
            snapshot = list(self._events)
        return [
            e for e in snapshot
            if (name is None or e.name == name)
            and (source is None or e.source == source)
        ]


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def hash_event(payload: dict) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of payload."""
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_event_log(events: Iterable[EscrowEvent]) -> bool:
    """
    Re-hash every event and check the chain links back to genesis.
    Returns True if intact; raises AuditIntegrityError otherwise.
    """
    prev = GENESIS_HASH
    for expected_sequence, event in enumerate(events):
        if event.sequence != expected_sequence:
            raise AuditIntegrityError(
                f"Sequence gap: expected {expected_sequence}, found {event.sequence}"
            )
        if event.prev_hash != prev:
            raise AuditIntegrityError(
                f"Broken link at event {event.sequence}: "
                f"prev_hash={event.prev_hash} expected={prev}"
            )
        computed = hash_event(
            _canonical(event.sequence, event.name, event.source, event.args, event.prev_hash)
        )
        if computed != event.event_hash:
            raise AuditIntegrityError(
                f"Hash mismatch at event {event.sequence}: "
                f"stored={event.event_hash} computed={computed}"
            )
        prev = event.event_hash
    return True


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _canonical(sequence: int, name: str, source: str, args: dict, prev_hash: str) -> dict:
    return {
        "args": args,
        "name": name,
        "prev_hash": prev_hash,
        "sequence": sequence,
        "source": source,
        "version": "1.0",
    }


def _serialize_value(val: Any) -> Any:
    """Convert value to a JSON-serializable form."""
    if isinstance(val, Enum):
        return val.name
    if isinstance(val, (list, tuple)):
        return [_serialize_value(v) for v in val]
    return val
