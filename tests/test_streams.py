"""
Stream Ledger Tests

Test Coverage:
- Vesting schedule (pure function and ledger)
- Withdraw / cancel state machine and authorization
- Escrow atomicity and duplicate ids
- Concurrent withdrawals
"""

import threading

import pytest

from dvpn.errors import (
    ErrorKind,
    InsufficientBalance,
    InvalidArgument,
    InvalidState,
    NotFound,
    StreamExists,
    Unauthorized,
)
from dvpn.notify import EventType, NotificationHub
from dvpn.settlement.custody import STREAM_ESCROW, Custody
from dvpn.settlement.streams import (
    ID_POLICY_DISAMBIGUATE,
    Stream,
    StreamLedger,
    StreamStatus,
    available_amount,
)
from tests.helpers import FakeClock


@pytest.mark.unit
class TestAvailableAmount:
    """Test the vesting formula."""

    def setup_method(self):
        self.stream = Stream(
            stream_id="s",
            sender="A",
            recipient="B",
            amount=1000,
            start_time=100,
            end_time=200,
        )

    def test_before_start(self):
        assert available_amount(self.stream, 100) == 0
        assert available_amount(self.stream, 50) == 0

    def test_linear_vesting(self):
        assert available_amount(self.stream, 125) == 250
        assert available_amount(self.stream, 150) == 500

    def test_rounds_down(self):
        self.stream.amount = 10
        self.stream.end_time = 103
        # 10 * 1 / 3 = 3.33
        assert available_amount(self.stream, 101) == 3

    def test_after_end(self):
        assert available_amount(self.stream, 200) == 1000
        assert available_amount(self.stream, 10_000) == 1000

    def test_withdrawn_subtracted(self):
        self.stream.withdrawn = 400
        assert available_amount(self.stream, 150) == 100
        assert available_amount(self.stream, 130) == 0

    def test_monotonic(self):
        values = [available_amount(self.stream, t) for t in range(100, 201)]
        assert values == sorted(values)


@pytest.mark.unit
class TestStreamLifecycle:
    """Test the stream state machine."""

    def setup_method(self):
        self.clock = FakeClock(start=1_000)
        self.custody = Custody({"A": 10_000, "C": 10})
        self.hub = NotificationHub()
        self.events = []
        self.hub.subscribe(self.events.append)
        self.ledger = StreamLedger(self.custody, clock=self.clock, notifier=self.hub)

    def _create(self, amount=1000, duration=100):
        return self.ledger.create_stream("A", "B", amount=amount, duration=duration)

    def test_create_escrows_amount(self):
        stream = self._create()

        assert stream.status == StreamStatus.ACTIVE
        assert stream.start_time == 1_000
        assert stream.end_time == 1_100
        assert self.custody.balance_of("A") == 9_000
        assert self.custody.balance_of(STREAM_ESCROW) == 1_000
        assert self.events[0].event == EventType.STREAM_CREATED

    @pytest.mark.parametrize("amount,duration,recipient", [
        (0, 100, "B"),
        (-5, 100, "B"),
        (100, 0, "B"),
        (100, -1, "B"),
        (100, 100, "A"),
        (100, 100, ""),
        (True, 100, "B"),
        (100, True, "B"),
        (100.0, 100, "B"),
    ])
    def test_create_validation(self, amount, duration, recipient):
        with pytest.raises(InvalidArgument):
            self.ledger.create_stream("A", recipient, amount=amount, duration=duration)
        assert self.custody.balance_of("A") == 10_000

    def test_failed_escrow_creates_no_stream(self):
        with pytest.raises(InsufficientBalance):
            self.ledger.create_stream("C", "B", amount=1000, duration=100)

        assert self.ledger.streams_for("C") == []
        assert self.custody.balance_of("C") == 10

    def test_duplicate_id_rejected(self):
        self._create()

        with pytest.raises(StreamExists) as exc:
            self._create()

        assert exc.value.kind == ErrorKind.STREAM_EXISTS
        assert self.custody.balance_of("A") == 9_000

    def test_duplicate_id_disambiguated(self):
        ledger = StreamLedger(self.custody, clock=self.clock, id_policy=ID_POLICY_DISAMBIGUATE)

        first = ledger.create_stream("A", "B", amount=10, duration=10)
        second = ledger.create_stream("A", "B", amount=10, duration=10)

        assert first.stream_id != second.stream_id
        assert len(ledger.streams_for("B")) == 2

    def test_same_pair_later_second_ok(self):
        first = self._create()
        self.clock.advance(1)
        second = self._create()
        assert first.stream_id != second.stream_id

    def test_half_way_withdrawal(self):
        """createStream(1000, 100); at elapsed=50 withdraw 500, then 1 fails."""
        stream = self._create()
        self.clock.advance(50)

        assert self.ledger.available(stream.stream_id) == 500
        updated = self.ledger.withdraw(stream.stream_id, "B", 500)
        assert updated.withdrawn == 500
        assert self.custody.balance_of("B") == 500

        with pytest.raises(InsufficientBalance, match="exceeds available") as exc:
            self.ledger.withdraw(stream.stream_id, "B", 1)
        assert exc.value.context["available"] == 0

    def test_full_withdrawal_completes(self):
        stream = self._create()
        self.clock.advance(50)
        self.ledger.withdraw(stream.stream_id, "B", 500)
        self.clock.advance(60)

        assert self.ledger.available(stream.stream_id) == 500
        done = self.ledger.withdraw(stream.stream_id, "B", 500)

        assert done.status == StreamStatus.COMPLETED
        assert done.withdrawn == done.amount
        assert self.events[-1].event == EventType.STREAM_COMPLETED
        with pytest.raises(InvalidState):
            self.ledger.withdraw(stream.stream_id, "B", 1)
        assert self.ledger.available(stream.stream_id) == 0

    def test_withdraw_over_total(self):
        stream = self._create()
        self.clock.advance(500)

        with pytest.raises(InsufficientBalance, match="stream amount"):
            self.ledger.withdraw(stream.stream_id, "B", 1001)

    def test_withdraw_non_positive(self):
        stream = self._create()
        self.clock.advance(10)
        with pytest.raises(InvalidArgument):
            self.ledger.withdraw(stream.stream_id, "B", 0)

    def test_withdraw_rejects_bool_amount(self):
        stream = self._create()
        self.clock.advance(10)

        with pytest.raises(InvalidArgument):
            self.ledger.withdraw(stream.stream_id, "B", True)
        assert self.ledger.get(stream.stream_id).withdrawn == 0

    def test_only_recipient_withdraws(self):
        stream = self._create()
        self.clock.advance(50)

        with pytest.raises(Unauthorized):
            self.ledger.withdraw(stream.stream_id, "A", 10)
        assert self.ledger.get(stream.stream_id).withdrawn == 0

    def test_unknown_stream(self):
        with pytest.raises(NotFound):
            self.ledger.withdraw("nope", "B", 1)

    def test_cancel_refunds_remainder(self):
        stream = self._create()
        self.clock.advance(30)
        self.ledger.withdraw(stream.stream_id, "B", 300)

        cancelled = self.ledger.cancel_stream(stream.stream_id, "A")

        assert cancelled.status == StreamStatus.CANCELLED
        assert self.custody.balance_of("A") == 9_700
        assert self.custody.balance_of(STREAM_ESCROW) == 0
        assert self.events[-1].payload["refund"] == "700"
        with pytest.raises(InvalidState):
            self.ledger.withdraw(stream.stream_id, "B", 1)
        with pytest.raises(InvalidState):
            self.ledger.cancel_stream(stream.stream_id, "A")

    def test_only_sender_cancels(self):
        stream = self._create()
        with pytest.raises(Unauthorized):
            self.ledger.cancel_stream(stream.stream_id, "B")
        assert self.ledger.get(stream.stream_id).is_active

    def test_escrowed_total(self):
        a = self._create()
        self.clock.advance(1)
        self._create(amount=500)
        self.clock.advance(99)
        self.ledger.withdraw(a.stream_id, "B", 1000)

        assert self.ledger.escrowed_total() == 500
        assert self.custody.balance_of(STREAM_ESCROW) == 500


@pytest.mark.unit
class TestConcurrentWithdrawals:
    """Test that concurrent withdrawals never over-withdraw."""

    def setup_method(self):
        self.clock = FakeClock(start=0)
        self.custody = Custody({"A": 1000})
        self.ledger = StreamLedger(self.custody, clock=self.clock)
        self.stream = self.ledger.create_stream("A", "B", amount=1000, duration=100)
        self.clock.advance(50)

    def test_only_fitting_subset_succeeds(self):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            try:
                self.ledger.withdraw(self.stream.stream_id, "B", 60)
                outcome = True
            except InsufficientBalance:
                outcome = False
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 500 available: 8 * 60 = 480 fits, a 9th would exceed
        assert results.count(True) == 8
        stream = self.ledger.get(self.stream.stream_id)
        assert stream.withdrawn == 480
        assert self.custody.balance_of("B") == 480
        assert 0 <= stream.withdrawn <= stream.amount
