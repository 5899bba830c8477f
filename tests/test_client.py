"""
test_client.py — Settlement exchange asset ledger

Tests cover:
  - Construction (missing API key)
  - Batch settlement (success, zero legs dropped, 402, 401, 422, 409 replay)
  - Retry behavior (5xx, recovery)
  - HTTP error code mapping to typed exceptions
  - Balance and history queries
  - Context manager support
  - An escrow agreement driving the exchange end to end
  - Config validation

Run with:
    pytest tests/test_client.py -v
    pytest tests/test_client.py -k "settle"     # settlement tests only
"""

from __future__ import annotations

import json

import httpx
import pytest

from freelancer_escrow.arbitration import ArbitrationLedger
from freelancer_escrow.audit import EventLog
from freelancer_escrow.client import (
    SettlementExchangeClient,
    _raise_for_status,
    _with_retries,
)
from freelancer_escrow.config import CORP_ADDRESS, EscrowConfig
from freelancer_escrow.errors import (
    AssetLedgerError,
    ExchangeAuthError,
    ExchangeNetworkError,
    InsufficientFundsError,
)
from freelancer_escrow.escrow import EscrowAgreement
from freelancer_escrow.models import AgreementState, Payout

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

def _make_response(status_code: int, body: dict | None = None) -> httpx.Response:
    """Build a fake httpx.Response without making any network calls."""
    content = json.dumps(body or {}).encode()
    return httpx.Response(
        status_code=status_code,
        content=content,
        headers={"Content-Type": "application/json"},
        request=httpx.Request("GET", "http://test"),
    )


class MockTransport(httpx.BaseTransport):
    """
    Configurable mock transport for httpx.Client.

    Responses are consumed in FIFO order per route, so a route with
    several enqueued responses plays them back in sequence (useful for
    retry tests). Every handled request is kept in `requests`.
    """

    def __init__(self):
        self._queue: list[tuple[str, str, httpx.Response]] = []
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method_path: tuple[str, str],
        status: int,
        body: dict | None = None,
    ) -> "MockTransport":
        method, path = method_path
        self._queue.append((method.upper(), path, _make_response(status, body)))
        return self

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        method = request.method.upper()
        path = request.url.path
        for i, (m, p, resp) in enumerate(self._queue):
            if m == method and path == p:
                self._queue.pop(i)
                self.requests.append(request)
                return resp
        raise AssertionError(
            f"MockTransport: unexpected request {method} {path}\n"
            f"Remaining queue: {[(m, p) for m, p, _ in self._queue]}"
        )


def _make_client(transport: MockTransport) -> SettlementExchangeClient:
    """Build a test client wired to a mock transport."""
    http = httpx.Client(transport=transport, base_url="https://test")
    config = EscrowConfig(api_key="test-key", exchange_url="https://test", network="sandbox")
    return SettlementExchangeClient(config, http_client=http)


def _sent_json(request: httpx.Request) -> dict:
    return json.loads(request.content)


BATCH = "/v1/transfers/batch"
SETTLE_OK = {
    "tx_hash": "0xTXHASH",
    "settled_at": "2026-02-18T12:01:00Z",
}
BALANCE_OK = {"available_balance": 10 ** 19}
HISTORY_OK = {"transactions": [{"id": "tx-1", "amount": 5}]}

CLIENT = "0xCLIENT"
FREELANCER = "0xFREELANCER"
ETHER = 10 ** 18


# ---------------------------------------------------------------------------
# 1. Construction
# ---------------------------------------------------------------------------

class TestConstruction:

    def test_missing_api_key_raises_auth_error(self):
        config = EscrowConfig(api_key="", exchange_url="https://test")
        with pytest.raises(ExchangeAuthError, match="FESCROW_API_KEY"):
            SettlementExchangeClient(config)

    def test_exchange_errors_are_asset_ledger_errors(self):
        assert issubclass(ExchangeAuthError, AssetLedgerError)
        assert issubclass(ExchangeNetworkError, AssetLedgerError)
        assert issubclass(InsufficientFundsError, AssetLedgerError)


# ---------------------------------------------------------------------------
# 2. Batch settlement
# ---------------------------------------------------------------------------

class TestSettle:

    def test_settle_success_returns_receipt(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 200, SETTLE_OK)
        client = _make_client(transport)

        receipt = client.settle(
            "escrow-1",
            [Payout(FREELANCER, 10 * ETHER), Payout(CORP_ADDRESS, ETHER // 2)],
            "escrow-1:confirm:2",
        )

        assert receipt.reference == "escrow-1:confirm:2"
        assert receipt.source == "escrow-1"
        assert receipt.tx_hash == "0xTXHASH"
        assert receipt.settled_at == "2026-02-18T12:01:00Z"
        assert receipt.total == 10 * ETHER + ETHER // 2

    def test_settle_sends_one_batch_keyed_by_reference(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 200, SETTLE_OK)
        client = _make_client(transport)

        client.settle("escrow-1", [Payout(FREELANCER, 7), Payout(CORP_ADDRESS, 0)], "ref-7")

        [request] = transport.requests
        body = _sent_json(request)
        assert body["source"] == "escrow-1"
        assert body["reference"] == "ref-7"
        assert body["idempotency_key"] == "ref-7"
        assert body["network"] == "sandbox"
        # zero-value legs are not sent
        assert body["payouts"] == [{"recipient": FREELANCER, "amount": 7}]

    def test_settle_402_raises_insufficient_funds(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 402, {"error": "Insufficient balance"})
        client = _make_client(transport)

        with pytest.raises(InsufficientFundsError, match="Insufficient balance"):
            client.settle(CLIENT, [Payout("escrow-1", 999)], "ref-big")

    def test_settle_401_raises_auth_error(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 401, {"error": "Unauthorized"})
        client = _make_client(transport)

        with pytest.raises(ExchangeAuthError):
            client.settle(CLIENT, [Payout("escrow-1", 1)], "ref-x")

    def test_settle_422_raises_asset_ledger_error(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 422, {"error": "amount must be positive"})
        client = _make_client(transport)

        with pytest.raises(AssetLedgerError, match="amount must be positive"):
            client.settle(CLIENT, [Payout("escrow-1", 1)], "ref-neg")

    def test_settle_409_fetches_existing_transfer(self):
        """A replayed reference returns the batch the exchange already applied."""
        transport = MockTransport()
        transport.add(("POST", BATCH), 409, {"error": "duplicate"})
        transport.add(("GET", "/v1/transfers/ref-dup"), 200, SETTLE_OK)
        client = _make_client(transport)

        receipt = client.settle(CLIENT, [Payout("escrow-1", 5)], "ref-dup")

        assert receipt.tx_hash == "0xTXHASH"
        assert len(transport.requests) == 2

    def test_settle_retries_on_500(self, monkeypatch):
        monkeypatch.setattr("freelancer_escrow.client.time.sleep", lambda _: None)

        transport = MockTransport()
        transport.add(("POST", BATCH), 500, {"error": "timeout"})
        transport.add(("POST", BATCH), 200, SETTLE_OK)
        client = _make_client(transport)

        receipt = client.settle(CLIENT, [Payout("escrow-1", 5)], "ref-retry")
        assert receipt.tx_hash == "0xTXHASH"

    def test_settle_500_exhausts_retries(self, monkeypatch):
        monkeypatch.setattr("freelancer_escrow.client.time.sleep", lambda _: None)

        transport = MockTransport()
        for _ in range(3):
            transport.add(("POST", BATCH), 500, {"error": "server error"})
        client = _make_client(transport)

        with pytest.raises(ExchangeNetworkError):
            client.settle(CLIENT, [Payout("escrow-1", 5)], "ref-down")


# ---------------------------------------------------------------------------
# 3. Account queries
# ---------------------------------------------------------------------------

class TestAccountQueries:

    def test_balance_of_returns_int(self):
        transport = MockTransport()
        transport.add(("GET", f"/v1/accounts/{CLIENT}/balance"), 200, BALANCE_OK)
        client = _make_client(transport)

        assert client.balance_of(CLIENT) == 10 ** 19

    def test_balance_missing_key_returns_zero(self):
        transport = MockTransport()
        transport.add(("GET", f"/v1/accounts/{CLIENT}/balance"), 200, {})
        client = _make_client(transport)

        assert client.balance_of(CLIENT) == 0

    def test_get_account_history(self):
        transport = MockTransport()
        transport.add(("GET", f"/v1/accounts/{CLIENT}/history"), 200, HISTORY_OK)
        client = _make_client(transport)

        history = client.get_account_history(CLIENT, limit=10)
        assert history == [{"id": "tx-1", "amount": 5}]
        assert transport.requests[0].url.params["limit"] == "10"

    def test_get_account_history_empty(self):
        transport = MockTransport()
        transport.add(("GET", f"/v1/accounts/{CLIENT}/history"), 200, {})
        client = _make_client(transport)

        assert client.get_account_history(CLIENT) == []

    def test_get_transfer_404(self):
        transport = MockTransport()
        transport.add(("GET", "/v1/transfers/missing"), 404, {"error": "Transfer not found"})
        client = _make_client(transport)

        with pytest.raises(AssetLedgerError, match="Not found"):
            client.get_transfer("missing")


# ---------------------------------------------------------------------------
# 4. Escrow agreement over the exchange
# ---------------------------------------------------------------------------

class TestAgreementOverExchange:

    def _agreement(self, client: SettlementExchangeClient) -> EscrowAgreement:
        config = EscrowConfig(api_key="test-key", exchange_url="https://test")
        ledger = ArbitrationLedger(config, event_log=EventLog())
        return EscrowAgreement(
            client=CLIENT,
            freelancer=FREELANCER,
            total_payment=10 * ETHER,
            milestone_count=1,
            arbitration=ledger,
            assets=client,
            config=config,
            address="escrow-x",
        )

    def test_deposit_and_release_post_two_batches(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 200, SETTLE_OK)
        transport.add(("POST", BATCH), 200, SETTLE_OK)
        agreement = self._agreement(_make_client(transport))

        agreement.deposit(CLIENT, 10 * ETHER, value=agreement.required_value(10 * ETHER))
        agreement.complete_milestone(FREELANCER, "done")
        agreement.confirm_and_pay(CLIENT)

        deposit, release = (_sent_json(r) for r in transport.requests)
        assert deposit["source"] == CLIENT
        assert deposit["payouts"] == [{"recipient": "escrow-x", "amount": 10 * ETHER + ETHER // 2}]
        assert release["source"] == "escrow-x"
        assert release["payouts"] == [
            {"recipient": FREELANCER, "amount": 10 * ETHER},
            {"recipient": CORP_ADDRESS, "amount": ETHER // 2},
        ]
        assert deposit["reference"] != release["reference"]
        assert agreement.state is AgreementState.COMPLETED

    def test_rejected_deposit_leaves_agreement_untouched(self):
        transport = MockTransport()
        transport.add(("POST", BATCH), 402, {"error": "Insufficient balance"})
        agreement = self._agreement(_make_client(transport))

        with pytest.raises(InsufficientFundsError):
            agreement.deposit(CLIENT, 10 * ETHER, value=agreement.required_value(10 * ETHER))

        assert agreement.state is AgreementState.AWAITING_DEPOSIT
        assert agreement.held_amount == 0
        assert agreement.event_log.events("DepositMade") == []


# ---------------------------------------------------------------------------
# 5. _raise_for_status — HTTP error code mapping
# ---------------------------------------------------------------------------

class TestRaiseForStatus:

    def test_200_does_not_raise(self):
        _raise_for_status(_make_response(200, {}), "test")

    def test_401_raises_auth_error(self):
        with pytest.raises(ExchangeAuthError, match="Unauthorized"):
            _raise_for_status(_make_response(401, {"error": "bad key"}), "op")

    def test_402_raises_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError, match="Insufficient balance"):
            _raise_for_status(_make_response(402, {"error": "no funds"}), "op")

    def test_409_does_not_raise(self):
        _raise_for_status(_make_response(409, {"error": "duplicate"}), "op")

    def test_422_raises_validation_error(self):
        with pytest.raises(AssetLedgerError, match="Validation error"):
            _raise_for_status(_make_response(422, {"error": "invalid amount"}), "op")

    def test_503_raises_network_error(self):
        with pytest.raises(ExchangeNetworkError, match="Server error 503"):
            _raise_for_status(_make_response(503, {"error": "unavailable"}), "op")

    def test_unknown_4xx_raises_asset_ledger_error(self):
        with pytest.raises(AssetLedgerError, match="Unexpected 418"):
            _raise_for_status(_make_response(418, {"error": "I'm a teapot"}), "op")

    def test_non_json_body_uses_text(self):
        resp = httpx.Response(
            status_code=500,
            content=b"Internal Server Error",
            headers={"Content-Type": "text/plain"},
            request=httpx.Request("GET", "http://test"),
        )
        with pytest.raises(ExchangeNetworkError, match="Internal Server Error"):
            _raise_for_status(resp, "op")


# ---------------------------------------------------------------------------
# 6. _with_retries
# ---------------------------------------------------------------------------

class TestRetryHelper:

    def test_retries_on_timeout_then_succeeds(self, monkeypatch):
        monkeypatch.setattr("freelancer_escrow.client.time.sleep", lambda _: None)
        calls = []

        def fn():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.TimeoutException("timeout")
            return "ok"

        assert _with_retries(fn, retries=3, label="test") == "ok"
        assert len(calls) == 3

    def test_exhausts_retries_and_raises_network_error(self, monkeypatch):
        monkeypatch.setattr("freelancer_escrow.client.time.sleep", lambda _: None)

        def fn():
            raise httpx.NetworkError("unreachable")

        with pytest.raises(ExchangeNetworkError, match="failed after 3 attempts"):
            _with_retries(fn, retries=3, label="conn")

    def test_funds_error_not_retried(self):
        calls = []

        def fn():
            calls.append(1)
            raise InsufficientFundsError("short")

        with pytest.raises(InsufficientFundsError):
            _with_retries(fn, retries=3, label="test")
        assert len(calls) == 1

    def test_backoff_timing(self, monkeypatch):
        sleep_calls = []
        monkeypatch.setattr(
            "freelancer_escrow.client.time.sleep",
            lambda secs: sleep_calls.append(secs),
        )

        def fn():
            raise httpx.TimeoutException("t")

        with pytest.raises(ExchangeNetworkError):
            _with_retries(fn, retries=3, backoff=2.0, label="test")

        assert sleep_calls == [2.0, 4.0]


# ---------------------------------------------------------------------------
# 7. Context manager
# ---------------------------------------------------------------------------

class TestContextManager:

    def test_context_manager_closes_http_client(self):
        http = httpx.Client(transport=MockTransport(), base_url="https://test")
        config = EscrowConfig(api_key="key", exchange_url="https://test")
        client = SettlementExchangeClient(config, http_client=http)

        with client as c:
            assert c is client

        assert http.is_closed


# ---------------------------------------------------------------------------
# 8. Config validation
# ---------------------------------------------------------------------------

class TestConfig:

    def test_commission_is_floored_percentage(self):
        config = EscrowConfig(commission_rate=5)
        assert config.commission(10 * ETHER) == ETHER // 2
        assert config.commission(19) == 0

    def test_invalid_network_raises(self):
        with pytest.raises(Exception):
            EscrowConfig(network="testnet-999")

    def test_commission_rate_bounds(self):
        with pytest.raises(Exception):
            EscrowConfig(commission_rate=-1)
        with pytest.raises(Exception):
            EscrowConfig(commission_rate=101)

    def test_vote_cost_must_be_positive(self):
        with pytest.raises(Exception):
            EscrowConfig(vote_cost=0)

    def test_majority_threshold_optional(self):
        assert EscrowConfig(majority_threshold=None).majority_threshold is None
        assert EscrowConfig(majority_threshold=3).majority_threshold == 3
        with pytest.raises(Exception):
            EscrowConfig(majority_threshold=0)

    def test_timeout_bounds(self):
        with pytest.raises(Exception):
            EscrowConfig(timeout_seconds=0)
        with pytest.raises(Exception):
            EscrowConfig(timeout_seconds=9999)

    def test_empty_fee_recipient_rejected(self):
        with pytest.raises(Exception):
            EscrowConfig(fee_recipient="")
