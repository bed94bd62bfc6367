"""
Settlement Coordinator Tests

Test Coverage:
- Idempotent payment application
- Fee math
- Validation (minimum payment, inactive recipient, signatures)
- Concurrent duplicate submissions
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from dvpn.errors import InvalidArgument, InvalidState, Unauthorized
from dvpn.messages import PaymentTicket, payment_id
from dvpn.settlement.accounts import NodeRegistry
from dvpn.settlement.coordinator import SettlementCoordinator
from dvpn.settlement.custody import Custody
from tests.helpers import FakeClock


@pytest.mark.unit
class TestSettlementCoordinator:
    """Test payment processing."""

    def setup_method(self):
        self.clock = FakeClock()
        self.custody = Custody({"node-1": 5000})
        self.registry = NodeRegistry(self.custody, min_stake=1000, slash_amount=500, clock=self.clock)
        self.registry.register_node("node-1", "", 1000)
        self.coordinator = SettlementCoordinator(self.registry, fee_bps=250, min_payment=10)
        self.ticket = PaymentTicket(
            sender="alice",
            recipient="node-1",
            amount=10_000,
            timestamp=1_700_000_000,
            bandwidth=2048,
        )

    def test_fee_deducted(self):
        outcome = self.coordinator.process_payment(self.ticket)

        assert outcome.applied
        assert outcome.fee == 250
        assert outcome.net == 9_750
        assert self.coordinator.fee_pool == 250
        account = self.registry.get("node-1")
        assert account.total_earnings == 9_750
        assert account.total_bandwidth_provided == 2048

    def test_fee_rounds_down(self):
        assert self.coordinator.compute_fee(39) == 0
        assert self.coordinator.compute_fee(41) == 1

    def test_duplicate_ticket_is_noop(self):
        """Same ticket twice: earnings increase once."""
        self.coordinator.process_payment(self.ticket)
        outcome = self.coordinator.process_payment(self.ticket)

        assert not outcome.applied
        assert self.registry.get("node-1").total_earnings == 9_750
        assert self.coordinator.fee_pool == 250
        assert self.coordinator.stats["duplicates"] == 1

    def test_identity_ignores_bandwidth_and_signature(self):
        self.coordinator.process_payment(self.ticket)
        resent = PaymentTicket(
            sender="alice",
            recipient="node-1",
            amount=10_000,
            timestamp=1_700_000_000,
            bandwidth=9999,
            signature="ab",
        )

        assert not self.coordinator.process_payment(resent).applied
        assert resent.payment_id == payment_id("alice", "node-1", 10_000, 1_700_000_000)

    def test_different_timestamp_is_new_payment(self):
        self.coordinator.process_payment(self.ticket)
        later = PaymentTicket("alice", "node-1", 10_000, 1_700_000_001, 10)

        assert self.coordinator.process_payment(later).applied
        assert self.registry.get("node-1").total_earnings == 19_500

    def test_below_minimum(self):
        with pytest.raises(InvalidArgument):
            self.coordinator.process_payment(PaymentTicket("alice", "node-1", 9, 1))
        assert not self.coordinator.is_processed(payment_id("alice", "node-1", 9, 1))

    def test_inactive_recipient(self):
        self.registry.unregister_node("node-1")

        with pytest.raises(InvalidState):
            self.coordinator.process_payment(self.ticket)

        # Rejected tickets can be applied once the node is back
        assert not self.coordinator.is_processed(self.ticket.payment_id)
        assert self.coordinator.fee_pool == 0

    def test_unknown_recipient(self):
        with pytest.raises(InvalidState):
            self.coordinator.process_payment(PaymentTicket("alice", "ghost", 100, 1))

    def test_verifier_rejects(self):
        coordinator = SettlementCoordinator(
            self.registry, fee_bps=0, min_payment=1, verifier=lambda t: t.signature == "ok"
        )

        with pytest.raises(Unauthorized):
            coordinator.process_payment(self.ticket)

    def test_invalid_fee_bps(self):
        with pytest.raises(InvalidArgument):
            SettlementCoordinator(self.registry, fee_bps=10_001, min_payment=1)

    def test_large_amounts(self):
        amount = 5 * 10 ** 24
        outcome = self.coordinator.process_payment(PaymentTicket("alice", "node-1", amount, 2))

        assert outcome.fee + outcome.net == amount

    def test_concurrent_duplicates_apply_once(self):
        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: self.coordinator.process_payment(self.ticket), range(16)))

        assert sum(1 for o in outcomes if o.applied) == 1
        assert self.registry.get("node-1").total_earnings == 9_750
