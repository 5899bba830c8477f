"""
Shared pytest fixtures for freelancer-escrow tests.
"""

from __future__ import annotations

import pytest

from freelancer_escrow.arbitration import ArbitrationLedger
from freelancer_escrow.assets import InMemoryAssetLedger
from freelancer_escrow.audit import EventLog
from freelancer_escrow.config import CORP_ADDRESS, EscrowConfig
from freelancer_escrow.escrow import EscrowAgreement

ETHER = 10 ** 18

CLIENT = "0xCLIENT"
FREELANCER = "0xFREELANCER"
OPERATOR = "0xOPERATOR"
ARBITRATORS = ["0xARB1", "0xARB2", "0xARB3"]


@pytest.fixture
def config() -> EscrowConfig:
    """Explicit values so FESCROW_* variables in the environment never leak in."""
    return EscrowConfig(
        commission_rate=5,
        fee_recipient=CORP_ADDRESS,
        operator=OPERATOR,
        initial_credential=1,
        vote_cost=1,
        reward_bonus=1,
        majority_threshold=None,
        api_key="test-key",
        exchange_url="https://test",
        network="sandbox",
        timeout_seconds=5,
        max_retries=3,
    )


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def arbitration(config, event_log) -> ArbitrationLedger:
    return ArbitrationLedger(config, event_log=event_log)


@pytest.fixture
def assets() -> InMemoryAssetLedger:
    ledger = InMemoryAssetLedger()
    ledger.mint(CLIENT, 1000 * ETHER)
    return ledger


@pytest.fixture
def make_agreement(config, arbitration, assets):
    """Factory for agreements wired to the shared ledgers."""

    def _make(total_payment: int = 10 * ETHER, milestone_count: int = 1, **kwargs):
        return EscrowAgreement(
            client=kwargs.pop("client", CLIENT),
            freelancer=kwargs.pop("freelancer", FREELANCER),
            total_payment=total_payment,
            milestone_count=milestone_count,
            arbitration=arbitration,
            assets=kwargs.pop("assets", assets),
            config=kwargs.pop("config", config),
            project_description=kwargs.pop("project_description", "Build a dApp"),
            **kwargs,
        )

    return _make


@pytest.fixture
def agreement(make_agreement) -> EscrowAgreement:
    return make_agreement()


@pytest.fixture
def arbitrators(arbitration) -> list[str]:
    for principal in ARBITRATORS:
        arbitration.register_arbitrator(principal)
    return list(ARBITRATORS)


@pytest.fixture
def disputed(agreement, arbitration, arbitrators) -> EscrowAgreement:
    """
    Single-milestone agreement, fully funded and delivered, with dispute 1
    raised by the client. Every arbitrator has approved one vote.
    """
    amount = agreement.total_payment
    agreement.deposit(CLIENT, amount, value=agreement.required_value(amount))
    agreement.complete_milestone(FREELANCER, "Deliverable completed successfully")
    agreement.raise_dispute(CLIENT, "The deliverable was not completed as expected")
    for principal in arbitrators:
        arbitration.approve(principal, agreement.address, 1)
    return agreement
