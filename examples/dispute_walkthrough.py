"""
examples/dispute_walkthrough.py — Two-milestone contract with one dispute.

A client funds a dApp build in two milestones. The first is paid
normally; the second is disputed by the client and settled by three
registered arbitrators voting with their credential. The hash-chained
audit log is verified at the end.

Run:
    python examples/dispute_walkthrough.py
"""

import logging

from freelancer_escrow import (
    ArbitrationLedger,
    EscrowAgreement,
    EscrowConfig,
    EventLog,
    InMemoryAssetLedger,
    VoteSide,
    verify_event_log,
)

ETHER = 10 ** 18

CLIENT = "0xC11E47"
FREELANCER = "0xF4EE1A"
ARBITRATORS = ["0xA4B1", "0xA4B2", "0xA4B3"]


def eth(amount: int) -> str:
    return f"{amount / ETHER:.4f} ETH"


def main():
    logging.basicConfig(level=logging.WARNING)
    print("=== Freelancer Escrow: milestone contract with arbitration ===\n")

    config = EscrowConfig()
    log = EventLog()
    arbitration = ArbitrationLedger(config, event_log=log)
    assets = InMemoryAssetLedger()
    assets.mint(CLIENT, 100 * ETHER)

    for principal in ARBITRATORS:
        arbitration.register_arbitrator(principal)

    agreement = EscrowAgreement(
        client=CLIENT,
        freelancer=FREELANCER,
        total_payment=10 * ETHER,
        milestone_count=2,
        arbitration=arbitration,
        assets=assets,
        config=config,
        project_description="Build a dApp",
    )

    # Milestone 1: the happy path
    first = 4 * ETHER
    agreement.deposit(CLIENT, first, value=agreement.required_value(first))
    agreement.complete_milestone(FREELANCER, "Smart contracts deployed to testnet")
    agreement.confirm_and_pay(CLIENT)
    print(f"  Milestone 1 paid: {eth(first)} (+{eth(agreement.commission(first))} commission)")

    # Milestone 2 must cover exactly the remainder
    second = agreement.total_payment - agreement.payment_made
    agreement.deposit(CLIENT, second, value=agreement.required_value(second))
    agreement.complete_milestone(FREELANCER, "Frontend delivered")
    dispute_id = agreement.raise_dispute(CLIENT, "Frontend does not match the mockups")
    print(f"  Dispute {dispute_id} raised on milestone {agreement.current_milestone}\n")

    votes = [(ARBITRATORS[0], VoteSide.FREELANCER), (ARBITRATORS[1], VoteSide.FREELANCER)]
    for principal, side in votes:
        arbitration.approve(principal, agreement.address, config.vote_cost)
        winner = agreement.vote_on_dispute(principal, dispute_id, side)
        print(f"  {principal} voted for the {side.name.lower()}")
        if winner is not None:
            print(f"  -> dispute resolved in favour of the {winner.name.lower()}\n")

    print(agreement.summary())
    print("\n--- Arbitrators ---")
    for principal in ARBITRATORS:
        record = arbitration.get_record(principal)
        print(f"  {principal}: credential={record.balance} reputation={record.reputation}")

    print("\n--- Balances ---")
    print(f"  Freelancer : {eth(assets.balance_of(FREELANCER))}")
    print(f"  Fee        : {eth(assets.balance_of(config.fee_recipient))}")
    print(f"  Client     : {eth(assets.balance_of(CLIENT))}")

    verify_event_log(log.events())
    print(f"\n  Audit log: {len(log)} events, head {log.head_hash[:16]}...")
    print("  Integrity check: PASSED")


if __name__ == "__main__":
    main()
