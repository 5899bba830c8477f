"""
assets.py — Value-transfer substrate used by escrow agreements.

The engine never moves value itself. It hands a batch of payouts to an
AssetLedger, which must apply the whole batch atomically or raise an
AssetLedgerError having moved nothing. Two adapters exist:

  - InMemoryAssetLedger       — process-local balances (tests, simulations)
  - SettlementExchangeClient  — HTTP settlement exchange (see client.py)
"""

from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Sequence

from .errors import AssetLedgerError, InsufficientFundsError
from .models import Payout, TransferReceipt

logger = logging.getLogger("freelancer_escrow.assets")


class AssetLedger(ABC):
    """Atomic, non-reentrant store of value balances keyed by principal."""

    @abstractmethod
    def balance_of(self, principal: str) -> int:
        """Return the spendable balance of `principal` in base units."""

    @abstractmethod
    def settle(
        self,
        source: str,
        payouts: Sequence[Payout],
        reference: str,
    ) -> TransferReceipt:
        """
        Move every payout from `source` in one atomic batch.

        `reference` identifies the batch; repeating a reference must not
        move value twice.

        Raises:
            InsufficientFundsError: `source` cannot cover the batch.
            AssetLedgerError:       Any other failure; nothing moved.
        """


class InMemoryAssetLedger(AssetLedger):
    """Thread-safe in-process ledger. Fund accounts with mint()."""

    def __init__(self) -> None:
        self._balances: dict[str, int] = {}
        self._settled: dict[str, TransferReceipt] = {}
        self._lock = threading.Lock()

    def mint(self, principal: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must not be negative")
        with self._lock:
            self._balances[principal] = self._balances.get(principal, 0) + amount

    def balance_of(self, principal: str) -> int:
        with self._lock:
            return self._balances.get(principal, 0)

    def settle(
        self,
        source: str,
        payouts: Sequence[Payout],
        reference: str,
    ) -> TransferReceipt:
        legs = [p for p in payouts if p.amount]
        if any(p.amount < 0 for p in legs):
            raise AssetLedgerError(f"[{reference}] negative payout in batch")

        with self._lock:
            if reference in self._settled:
                logger.warning("Batch %s already settled, ignoring replay", reference)
                return self._settled[reference]

            total = sum(p.amount for p in legs)
            available = self._balances.get(source, 0)
            if total > available:
                raise InsufficientFundsError(
                    f"[{reference}] {source} holds {available}, batch needs {total}"
                )

            self._balances[source] = available - total
            for p in legs:
                self._balances[p.recipient] = self._balances.get(p.recipient, 0) + p.amount

            receipt = TransferReceipt(
                reference=reference,
                source=source,
                payouts=list(legs),
                tx_hash="0x" + hashlib.sha256(reference.encode("utf-8")).hexdigest(),
                settled_at=datetime.now(timezone.utc).isoformat(),
            )
            self._settled[reference] = receipt

        logger.info(
            "Settled batch %s: source=%s legs=%d total=%d",
            reference, source, len(legs), total,
        )
        return receipt
