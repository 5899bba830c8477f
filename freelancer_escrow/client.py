"""
client.py — Settlement exchange adapter for the AssetLedger interface.

Lets escrow agreements custody and release real funds held at an
A2A-style settlement exchange instead of in process memory. All network
calls go through this class.

Design goals:
  - Every settlement is one batch request, so a milestone payment and its
    commission either both land or neither does
  - Every method raises a typed AssetLedgerError on failure so the engine
    can roll back without inspecting raw HTTP responses
  - Retry logic built in for transient failures (batches are idempotent
    on their reference, so a retried POST cannot pay twice)
  - Pluggable transport for testing (inject a mock httpx.Client)
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

import httpx

from .assets import AssetLedger
from .config import EscrowConfig
from .errors import (
    AssetLedgerError,
    ExchangeAuthError,
    ExchangeNetworkError,
    InsufficientFundsError,
)
from .models import Payout, TransferReceipt

logger = logging.getLogger("freelancer_escrow.client")


# ---------------------------------------------------------------------------
# Internal retry helper
# ---------------------------------------------------------------------------

def _with_retries(fn, *, retries: int = 3, backoff: float = 1.0, label: str = ""):
    """
    Execute fn(), retrying up to `retries` times on transient network errors
    or 5xx server errors. Raises ExchangeNetworkError if all attempts fail.

    Retried: httpx transport errors AND ExchangeNetworkError (raised by
    _raise_for_status for 5xx responses). Not retried: auth errors,
    insufficient funds, or any other AssetLedgerError subclass.
    """
    last_exc = None
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except (httpx.TimeoutException, httpx.NetworkError, ExchangeNetworkError) as exc:
            last_exc = exc
            wait = backoff * (2 ** (attempt - 1))
            logger.warning(
                "Exchange %s: retriable error on attempt %d/%d, retrying in %.1fs: %s",
                label, attempt, retries, wait, exc,
            )
            if attempt < retries:
                time.sleep(wait)
    raise ExchangeNetworkError(
        f"{label} failed after {retries} attempts: {last_exc}"
    ) from last_exc


# ---------------------------------------------------------------------------
# Main client
# ---------------------------------------------------------------------------

class SettlementExchangeClient(AssetLedger):
    """
    AssetLedger backed by the settlement exchange HTTP API.

    Usage:
        with SettlementExchangeClient(EscrowConfig()) as assets:
            agreement = EscrowAgreement(..., assets=assets, ...)
    """

    def __init__(
        self,
        config: EscrowConfig,
        http_client: Optional[httpx.Client] = None,
    ):
        if not config.api_key:
            raise ExchangeAuthError(
                "FESCROW_API_KEY is not set. Export it or pass it via "
                "EscrowConfig(api_key=...)."
            )
        self._config = config
        self._http = http_client or httpx.Client(
            base_url=config.exchange_url,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
                "X-Client": "freelancer-escrow/0.1.0",
            },
            timeout=config.timeout_seconds,
        )
        logger.info(
            "SettlementExchangeClient initialized: exchange=%s network=%s",
            config.exchange_url,
            config.network,
        )

    # ------------------------------------------------------------------
    # AssetLedger interface
    # ------------------------------------------------------------------

    def balance_of(self, principal: str) -> int:
        """Return the available (non-escrowed) balance for a principal."""

        def _call():
            resp = self._http.get(f"/v1/accounts/{principal}/balance")
            _raise_for_status(resp, "balance_of")
            return resp.json()

        data = _with_retries(_call, retries=self._config.max_retries, label="balance_of")
        return int(data.get("available_balance", 0))

    def settle(
        self,
        source: str,
        payouts: Sequence[Payout],
        reference: str,
    ) -> TransferReceipt:
        """
        Submit every payout from `source` as one batch transfer.

        The reference doubles as the idempotency key. A 409 means the
        exchange already applied this batch, so the stored result is
        fetched instead of failing.

        Raises:
            InsufficientFundsError: Source balance too low (402).
            ExchangeAuthError:      Invalid API key (401).
            ExchangeNetworkError:   Exchange unreachable after retries.
            AssetLedgerError:       Rejected for any other reason.
        """
        legs = [p for p in payouts if p.amount]
        payload = {
            "source": source,
            "payouts": [{"recipient": p.recipient, "amount": p.amount} for p in legs],
            "reference": reference,
            "idempotency_key": reference,
            "network": self._config.network,
        }

        def _call():
            resp = self._http.post("/v1/transfers/batch", json=payload)
            _raise_for_status(resp, "settle")
            return resp

        resp = _with_retries(_call, retries=self._config.max_retries, label="settle")
        if resp.status_code == 409:
            data = self.get_transfer(reference)
        else:
            data = resp.json()

        receipt = TransferReceipt(
            reference=reference,
            source=source,
            payouts=legs,
            tx_hash=data.get("tx_hash", ""),
            settled_at=data.get("settled_at", ""),
        )
        logger.info(
            "Batch settled: reference=%s legs=%d total=%d tx=%s",
            reference, len(legs), receipt.total, receipt.tx_hash,
        )
        return receipt

    # ------------------------------------------------------------------
    # Status and account queries
    # ------------------------------------------------------------------

    def get_transfer(self, reference: str) -> dict:
        """Fetch a previously submitted batch by its reference."""

        def _call():
            resp = self._http.get(f"/v1/transfers/{reference}")
            _raise_for_status(resp, "get_transfer")
            return resp.json()

        return _with_retries(_call, retries=self._config.max_retries, label="get_transfer")

    def get_account_history(
        self,
        principal: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        """Return paginated transfer history for a principal."""

        def _call():
            resp = self._http.get(
                f"/v1/accounts/{principal}/history",
                params={"limit": limit, "offset": offset},
            )
            _raise_for_status(resp, "get_account_history")
            return resp.json()

        data = _with_retries(
            _call, retries=self._config.max_retries, label="get_account_history"
        )
        return data.get("transactions", [])

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _raise_for_status(resp: httpx.Response, operation: str) -> None:
    """
    Translate HTTP error codes into typed asset-ledger exceptions.

    Exchange error responses are expected to be JSON:
      {"error": "...", "code": "...", "detail": "..."}
    """
    if resp.is_success:
        return

    try:
        body = resp.json()
        message = body.get("error") or body.get("detail") or resp.text
    except Exception:
        message = resp.text

    status = resp.status_code

    if status == 401:
        raise ExchangeAuthError(f"[{operation}] Unauthorized: {message}")
    if status == 402:
        raise InsufficientFundsError(f"[{operation}] Insufficient balance: {message}")
    if status == 404:
        raise AssetLedgerError(f"[{operation}] Not found: {message}")
    if status == 409:
        # Idempotency collision: the exchange already applied this batch
        logger.warning("[%s] Idempotency collision (409): %s", operation, message)
        return
    if status == 422:
        raise AssetLedgerError(f"[{operation}] Validation error: {message}")
    if 500 <= status < 600:
        raise ExchangeNetworkError(f"[{operation}] Server error {status}: {message}")

    raise AssetLedgerError(f"[{operation}] Unexpected {status}: {message}")
