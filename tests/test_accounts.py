"""
Node Account Tests

Test Coverage:
- Registration thresholds and stake escrow
- Unregistration refunds
- Clamped slashing
- Earnings credit
- Reputation decay
"""

import pytest

from dvpn.errors import ErrorKind, InsufficientBalance, InsufficientStake, InvalidState, NotFound
from dvpn.settlement.accounts import SECONDS_PER_DAY, NodeRegistry
from dvpn.settlement.custody import SLASH_POOL, STAKE_ESCROW, Custody
from tests.helpers import FakeClock


@pytest.mark.unit
class TestRegistration:
    """Test register/unregister."""

    def setup_method(self):
        self.clock = FakeClock()
        self.custody = Custody({"node-1": 5000, "poor": 10})
        self.registry = NodeRegistry(
            self.custody, min_stake=1000, slash_amount=500, clock=self.clock
        )

    def test_register(self):
        account = self.registry.register_node("node-1", "eu-west-1", 1000)

        assert account.is_active
        assert account.reputation == 100
        assert account.stake == 1000
        assert account.last_active == self.clock.now
        assert self.custody.balance_of("node-1") == 4000
        assert self.custody.balance_of(STAKE_ESCROW) == 1000

    def test_stake_below_minimum(self):
        """registerNode(stake=999) with minStake=1000 escrows nothing."""
        with pytest.raises(InsufficientStake) as exc:
            self.registry.register_node("node-1", "", 999)

        assert exc.value.kind == ErrorKind.INSUFFICIENT_STAKE
        assert self.custody.balance_of("node-1") == 5000
        assert self.registry.get("node-1") is None

    def test_bool_stake_rejected(self):
        registry = NodeRegistry(self.custody, min_stake=1, slash_amount=1, clock=self.clock)

        with pytest.raises(InsufficientStake):
            registry.register_node("node-1", "", True)
        assert self.custody.balance_of("node-1") == 5000

    def test_unfunded_stake(self):
        with pytest.raises(InsufficientBalance):
            self.registry.register_node("poor", "", 1000)
        assert self.registry.get("poor") is None

    def test_double_registration(self):
        self.registry.register_node("node-1", "", 1000)
        with pytest.raises(InvalidState):
            self.registry.register_node("node-1", "", 1000)
        assert self.custody.balance_of("node-1") == 4000

    def test_unregister_refunds(self):
        self.registry.register_node("node-1", "", 1500)

        account = self.registry.unregister_node("node-1")

        assert not account.is_active
        assert account.stake == 0
        assert self.custody.balance_of("node-1") == 5000
        with pytest.raises(InvalidState):
            self.registry.unregister_node("node-1")

    def test_unregister_unknown(self):
        with pytest.raises(NotFound):
            self.registry.unregister_node("ghost")

    def test_reregistration_keeps_totals(self):
        self.registry.register_node("node-1", "", 1000)
        self.registry.credit_earnings("node-1", 50, 4096)
        self.registry.unregister_node("node-1")

        account = self.registry.register_node("node-1", "moved", 1000)

        assert account.total_earnings == 50
        assert account.total_bandwidth_provided == 4096
        assert account.metadata == "moved"


@pytest.mark.unit
class TestSlashing:
    """Test clamped slashing."""

    def setup_method(self):
        self.clock = FakeClock()
        self.custody = Custody({"node-1": 5000})
        self.registry = NodeRegistry(
            self.custody, min_stake=100, slash_amount=500, clock=self.clock
        )

    def test_slash_clamped_to_stake(self):
        """stake=300, slashAmount=500 -> stake 0, reputation -50."""
        self.registry.register_node("node-1", "", 300)

        account = self.registry.slash_node("node-1", "double signing")

        assert account.stake == 0
        assert account.reputation == 50
        assert self.custody.balance_of(SLASH_POOL) == 300
        assert self.custody.balance_of(STAKE_ESCROW) == 0

    def test_slash_partial_stake(self):
        self.registry.register_node("node-1", "", 1200)

        account = self.registry.slash_node("node-1", "downtime")

        assert account.stake == 700
        assert self.custody.balance_of(SLASH_POOL) == 500

    def test_reputation_floor(self):
        self.registry.register_node("node-1", "", 300)

        for _ in range(3):
            account = self.registry.slash_node("node-1", "repeat")

        assert account.reputation == 0
        assert account.stake == 0
        assert account.slash_count == 3

    def test_slash_then_unregister_refunds_remainder(self):
        self.registry.register_node("node-1", "", 1200)
        self.registry.slash_node("node-1", "downtime")

        self.registry.unregister_node("node-1")

        assert self.custody.balance_of("node-1") == 5000 - 500
        assert self.custody.total_supply() == 5000


@pytest.mark.unit
class TestEarningsAndDecay:
    """Test earnings credit and reputation decay."""

    def setup_method(self):
        self.clock = FakeClock()
        self.custody = Custody({"node-1": 5000, "node-2": 5000})
        self.registry = NodeRegistry(
            self.custody,
            min_stake=1000,
            slash_amount=500,
            reputation_decay_per_day=5,
            clock=self.clock,
        )
        self.registry.register_node("node-1", "", 1000)

    def test_credit_is_monotonic(self):
        a = self.registry.credit_earnings("node-1", 10, 100)
        b = self.registry.credit_earnings("node-1", 0, 0)
        c = self.registry.credit_earnings("node-1", 5, 50)

        assert a.total_earnings <= b.total_earnings <= c.total_earnings == 15
        assert c.total_bandwidth_provided == 150

    def test_credit_requires_active_node(self):
        self.registry.unregister_node("node-1")
        with pytest.raises(InvalidState):
            self.registry.credit_earnings("node-1", 10, 100)

    def test_credit_unknown_node(self):
        with pytest.raises(NotFound):
            self.registry.credit_earnings("node-9", 10, 100)

    def test_lookups_of_unknown_owners_keep_no_state(self):
        for i in range(100):
            assert not self.registry.is_active(f"nobody-{i}")
            assert self.registry.get(f"nobody-{i}") is None
        with pytest.raises(NotFound):
            self.registry.slash_node("nobody-0", "missed heartbeat")

        assert set(self.registry._node_locks) == {"node-1"}

    def test_decay_per_full_day(self):
        self.clock.advance(SECONDS_PER_DAY * 2 + 3600)

        assert self.registry.apply_decay() == 1
        assert self.registry.get("node-1").reputation == 90

    def test_decay_not_applied_twice(self):
        self.clock.advance(SECONDS_PER_DAY)
        self.registry.apply_decay()
        self.registry.apply_decay()

        assert self.registry.get("node-1").reputation == 95

    def test_activity_stops_decay(self):
        self.clock.advance(SECONDS_PER_DAY)
        self.registry.apply_decay()
        self.registry.credit_earnings("node-1", 1, 1)
        self.clock.advance(SECONDS_PER_DAY / 2)

        assert self.registry.apply_decay() == 0
        assert self.registry.get("node-1").reputation == 95

    def test_decay_disabled_by_default(self):
        registry = NodeRegistry(self.custody, min_stake=1000, slash_amount=500, clock=self.clock)
        registry.register_node("node-2", "", 1000)
        self.clock.advance(SECONDS_PER_DAY * 10)

        assert registry.apply_decay() == 0
        assert registry.get("node-2").reputation == 100
