"""
Peer Ledger Tests

Test Coverage:
- Key and CIDR validation (no mutation on rejection)
- Re-registration keeps counters
- Idempotent removal
- Stats updates and status notifications
- Snapshot isolation
- Caller-driven staleness
"""

import pytest

from dvpn.errors import ErrorKind, InvalidArgument, InvalidKeyFormat, NotFound
from dvpn.notify import EventType, NotificationHub
from dvpn.peers.ledger import PeerLedger, normalize_allowed_ips
from tests.helpers import FakeClock, make_key


@pytest.mark.unit
class TestPeerRegistration:
    """Test add/remove semantics."""

    def setup_method(self):
        self.clock = FakeClock()
        self.ledger = PeerLedger(clock=self.clock)
        self.key = make_key(1)

    def test_add_peer(self):
        peer = self.ledger.add_peer(self.key, ["10.0.0.2/32"], endpoint="203.0.113.5:51820")

        assert peer.public_key == self.key
        assert peer.allowed_ips == frozenset({"10.0.0.2/32"})
        assert peer.endpoint == "203.0.113.5:51820"
        assert peer.is_active
        assert peer.bytes_rx == 0 and peer.bytes_tx == 0
        assert peer.last_seen == self.clock.now
        assert len(self.ledger) == 1

    def test_invalid_key_rejected_without_mutation(self):
        with pytest.raises(InvalidKeyFormat) as exc:
            self.ledger.add_peer("not-a-valid-key", ["10.0.0.2/32"])

        assert exc.value.kind == ErrorKind.INVALID_KEY_FORMAT
        assert len(self.ledger) == 0

    def test_key_wrong_padding_rejected(self):
        # 44 characters but not a padded 32-byte encoding
        with pytest.raises(InvalidKeyFormat):
            self.ledger.add_peer("A" * 44, ["10.0.0.2/32"])

    def test_bad_cidr_aborts_whole_add(self):
        with pytest.raises(InvalidArgument):
            self.ledger.add_peer(self.key, ["10.0.0.2/32", "10.0.0.300/32"])

        assert self.key not in self.ledger

    def test_empty_allowed_ips_rejected(self):
        with pytest.raises(InvalidArgument):
            self.ledger.add_peer(self.key, [])

    def test_reregistration_preserves_counters(self):
        self.ledger.add_peer(self.key, ["10.0.0.2/32"])
        self.ledger.update_stats(self.key, 100, 200)

        peer = self.ledger.add_peer(self.key, ["10.0.0.9/32"], endpoint="198.51.100.1:4000")

        assert peer.allowed_ips == frozenset({"10.0.0.9/32"})
        assert peer.endpoint == "198.51.100.1:4000"
        assert peer.bytes_rx == 100
        assert peer.bytes_tx == 200
        assert len(self.ledger) == 1

    def test_remove_unknown_is_noop(self):
        assert self.ledger.remove_peer(self.key) is None
        assert self.ledger.remove_peer(self.key) is None

    def test_remove_returns_final_counters(self):
        self.ledger.add_peer(self.key, ["10.0.0.2/32"])
        self.ledger.update_stats(self.key, 5, 7)

        removed = self.ledger.remove_peer(self.key)

        assert removed.total_bytes == 12
        assert self.ledger.get(self.key) is None

    def test_snapshots_are_isolated(self):
        self.ledger.add_peer(self.key, ["10.0.0.2/32"])

        snapshot = self.ledger.get(self.key)
        snapshot.bytes_rx = 999

        assert self.ledger.get(self.key).bytes_rx == 0
        assert self.ledger.list()[0].bytes_rx == 0


@pytest.mark.unit
class TestStatsUpdates:
    """Test the metering mutation path."""

    def setup_method(self):
        self.clock = FakeClock()
        self.events = []
        self.hub = NotificationHub()
        self.hub.subscribe(self.events.append)
        self.ledger = PeerLedger(notifier=self.hub, clock=self.clock)
        self.key = make_key(2)
        self.ledger.add_peer(self.key, ["10.0.0.3/32"])

    def test_update_adds_deltas(self):
        self.ledger.update_stats(self.key, 10, 20)
        peer = self.ledger.update_stats(self.key, 1, 2)

        assert peer.bytes_rx == 11
        assert peer.bytes_tx == 22
        assert self.ledger.total_bytes() == 33

    def test_update_refreshes_last_seen(self):
        self.clock.advance(30)
        peer = self.ledger.update_stats(self.key, 1, 1)
        assert peer.last_seen == self.clock.now

    def test_negative_delta_rejected(self):
        with pytest.raises(InvalidArgument):
            self.ledger.update_stats(self.key, -1, 0)
        assert self.ledger.get(self.key).bytes_rx == 0

    def test_unknown_peer(self):
        with pytest.raises(NotFound):
            self.ledger.update_stats(make_key(99), 1, 1)

    def test_status_change_notifies(self):
        self.ledger.update_stats(self.key, 0, 0, active=False)
        self.ledger.update_stats(self.key, 0, 0, active=False)
        self.ledger.update_stats(self.key, 0, 0, active=True)

        changes = [n for n in self.events if n.event == EventType.STATUS_CHANGED]
        assert [n.payload["isActive"] for n in changes] == [False, True]

    def test_add_and_remove_notify(self):
        self.ledger.remove_peer(self.key)

        kinds = [n.event for n in self.events]
        assert kinds == [EventType.PEER_ADDED, EventType.PEER_REMOVED]

    def test_mark_stale(self):
        other = make_key(3)
        self.ledger.add_peer(other, ["10.0.0.4/32"])
        self.clock.advance(200)
        self.ledger.update_stats(other, 1, 1)

        stale = self.ledger.mark_stale(timeout=120)

        assert stale == [self.key]
        assert not self.ledger.get(self.key).is_active
        assert self.ledger.get(other).is_active
        # Stale peers stay registered
        assert self.key in self.ledger


@pytest.mark.unit
class TestAllowedIps:
    """Test CIDR normalization."""

    def test_host_address_becomes_cidr(self):
        assert normalize_allowed_ips(["10.0.0.2"]) == frozenset({"10.0.0.2/32"})

    def test_host_bits_are_masked(self):
        assert normalize_allowed_ips(["10.0.0.7/24"]) == frozenset({"10.0.0.0/24"})

    def test_ipv6(self):
        assert normalize_allowed_ips(["fd00::2/128"]) == frozenset({"fd00::2/128"})
