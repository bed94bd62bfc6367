"""
Stream Ledger - Time-vested payment streams.

A stream escrows ``amount`` from a sender and releases it linearly to a
recipient between ``start_time`` and ``end_time``:

    elapsed >= duration:  available = amount - withdrawn
    otherwise:            available = max(0, floor(amount * elapsed / duration) - withdrawn)

Integer arithmetic throughout; vesting rounds down so cumulative withdrawals
can never exceed the escrowed amount.

Lifecycle:
    ACTIVE -> COMPLETED   (withdrawn == amount)
    ACTIVE -> CANCELLED   (sender cancels; unvested remainder refunded)

Withdrawals on one stream are serialized by a per-stream lock, so concurrent
requests cannot jointly exceed what is available.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from threading import Lock, RLock
from typing import Callable, Dict, List, Optional

from dvpn.errors import (
    InsufficientBalance,
    InvalidArgument,
    InvalidState,
    NotFound,
    StreamExists,
    Unauthorized,
)
from dvpn.messages import canonical_bytes
from dvpn.notify import EventType, NotificationHub
from dvpn.settlement.custody import STREAM_ESCROW, Custody, is_strict_int

logger = logging.getLogger(__name__)

# Collision handling for streams created by the same pair in the same second
ID_POLICY_REJECT = "reject"
ID_POLICY_DISAMBIGUATE = "disambiguate"


class StreamStatus(Enum):
    """Stream lifecycle states."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Stream:
    """A time-vested escrow from sender to recipient."""

    stream_id: str
    sender: str
    recipient: str
    amount: int
    start_time: int
    end_time: int
    withdrawn: int = 0
    status: StreamStatus = StreamStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == StreamStatus.ACTIVE

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time

    @property
    def remaining(self) -> int:
        return self.amount - self.withdrawn

    def to_dict(self) -> Dict:
        return {
            "streamId": self.stream_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "withdrawn": str(self.withdrawn),
            "isActive": self.is_active,
            "status": self.status.value,
        }


def derive_stream_id(sender: str, recipient: str, created_at: int, nonce: int = 0) -> str:
    """Deterministic stream id from the pair and creation second."""
    fields = {"sender": sender, "recipient": recipient, "created_at": int(created_at)}
    if nonce:
        fields["nonce"] = nonce
    return hashlib.sha256(canonical_bytes(fields)).hexdigest()


def available_amount(stream: Stream, now: int) -> int:
    """Amount the recipient may withdraw at time ``now``."""
    elapsed = now - stream.start_time
    duration = stream.end_time - stream.start_time

    if elapsed <= 0:
        return 0
    if elapsed >= duration:
        return stream.amount - stream.withdrawn

    vested = stream.amount * elapsed // duration
    return max(0, vested - stream.withdrawn)


class StreamLedger:
    """
    Owns all payment streams and their escrowed funds.

    Example:
        >>> ledger = StreamLedger(custody)
        >>> s = ledger.create_stream("alice", "node", amount=1000, duration=100)
        >>> ledger.withdraw(s.stream_id, caller="node", amount=ledger.available(s.stream_id))
    """

    def __init__(
        self,
        custody: Custody,
        clock: Callable[[], float] = time.time,
        id_policy: str = ID_POLICY_REJECT,
        notifier: Optional[NotificationHub] = None
    ):
        if id_policy not in (ID_POLICY_REJECT, ID_POLICY_DISAMBIGUATE):
            raise InvalidArgument(f"Unknown stream id policy: {id_policy}")

        self.custody = custody
        self.clock = clock
        self.id_policy = id_policy
        self.notifier = notifier

        self._streams: Dict[str, Stream] = {}
        self._stream_locks: Dict[str, Lock] = {}
        self._table_lock = RLock()

    def _now(self) -> int:
        return int(self.clock())

    def _locked(self, stream_id: str):
        with self._table_lock:
            stream = self._streams.get(stream_id)
            if stream is None:
                raise NotFound(f"Stream {stream_id[:16]} not found", stream_id=stream_id)
            return stream, self._stream_locks[stream_id]

    def create_stream(self, sender: str, recipient: str, amount: int, duration: int) -> Stream:
        """
        Create a stream and escrow its amount from the sender.

        Raises:
            InvalidArgument: missing party, non-positive amount/duration, or sender == recipient
            StreamExists: derived id already used (reject policy)
            InsufficientBalance: sender cannot fund the escrow (no stream created)
        """
        if not sender or not recipient:
            raise InvalidArgument("Sender and recipient are required")
        if sender == recipient:
            raise InvalidArgument("Stream recipient must differ from sender", sender=sender)
        if not is_strict_int(amount) or amount <= 0:
            raise InvalidArgument("Stream amount must be a positive integer", amount=amount)
        if not is_strict_int(duration) or duration <= 0:
            raise InvalidArgument("Stream duration must be a positive integer", duration=duration)

        now = self._now()
        with self._table_lock:
            stream_id = derive_stream_id(sender, recipient, now)
            nonce = 0
            while stream_id in self._streams:
                if self.id_policy == ID_POLICY_REJECT:
                    raise StreamExists(
                        f"Stream {stream_id[:16]} already exists",
                        stream_id=stream_id,
                    )
                nonce += 1
                stream_id = derive_stream_id(sender, recipient, now, nonce)

            # Escrow before the record exists: a failed transfer leaves no stream
            self.custody.transfer(sender, STREAM_ESCROW, amount)

            stream = Stream(
                stream_id=stream_id,
                sender=sender,
                recipient=recipient,
                amount=amount,
                start_time=now,
                end_time=now + duration,
            )
            self._streams[stream_id] = stream
            self._stream_locks[stream_id] = Lock()
            snapshot = replace(stream)

        logger.info(
            f"Stream {stream_id[:16]} created: {sender[:10]} -> {recipient[:10]} "
            f"amount={amount} duration={duration}s"
        )
        self._publish(EventType.STREAM_CREATED, snapshot)
        return snapshot

    def available(self, stream_id: str, now: Optional[int] = None) -> int:
        """Withdrawable amount; zero for streams that are no longer active."""
        stream, lock = self._locked(stream_id)
        with lock:
            if not stream.is_active:
                return 0
            return available_amount(stream, self._now() if now is None else now)

    def withdraw(self, stream_id: str, caller: str, amount: int) -> Stream:
        """
        Release vested funds to the recipient.

        Raises:
            NotFound: unknown stream
            Unauthorized: caller is not the recipient
            InvalidState: stream completed or cancelled
            InvalidArgument: non-positive amount
            InsufficientBalance: amount exceeds the stream total or what is available
        """
        stream, lock = self._locked(stream_id)

        with lock:
            if caller != stream.recipient:
                raise Unauthorized("Only the stream recipient can withdraw", stream_id=stream_id)
            if not stream.is_active:
                raise InvalidState(
                    f"Stream is {stream.status.value}",
                    stream_id=stream_id,
                    status=stream.status.value,
                )
            if not is_strict_int(amount) or amount <= 0:
                raise InvalidArgument("Withdraw amount must be a positive integer", amount=amount)
            if stream.withdrawn + amount > stream.amount:
                raise InsufficientBalance(
                    "Withdrawal exceeds stream amount",
                    available=stream.remaining,
                    requested=amount,
                )

            available = available_amount(stream, self._now())
            if amount > available:
                raise InsufficientBalance(
                    "Withdrawal exceeds available",
                    available=available,
                    requested=amount,
                )

            self.custody.transfer(STREAM_ESCROW, stream.recipient, amount)
            stream.withdrawn += amount
            if stream.withdrawn == stream.amount:
                stream.status = StreamStatus.COMPLETED
            snapshot = replace(stream)

        logger.info(
            f"Stream {stream_id[:16]} withdraw {amount} "
            f"({snapshot.withdrawn}/{snapshot.amount})"
        )
        if snapshot.status == StreamStatus.COMPLETED:
            logger.info(f"Stream {stream_id[:16]} completed")
            self._publish(EventType.STREAM_COMPLETED, snapshot)
        return snapshot

    def cancel_stream(self, stream_id: str, caller: str) -> Stream:
        """
        Cancel an active stream and refund the unwithdrawn remainder to the sender.

        Raises:
            NotFound, Unauthorized, InvalidState
        """
        stream, lock = self._locked(stream_id)

        with lock:
            if caller != stream.sender:
                raise Unauthorized("Only the stream sender can cancel", stream_id=stream_id)
            if not stream.is_active:
                raise InvalidState(
                    f"Stream is {stream.status.value}",
                    stream_id=stream_id,
                    status=stream.status.value,
                )

            refund = stream.amount - stream.withdrawn
            if refund > 0:
                self.custody.transfer(STREAM_ESCROW, stream.sender, refund)
            stream.status = StreamStatus.CANCELLED
            snapshot = replace(stream)

        logger.info(f"Stream {stream_id[:16]} cancelled, refunded {refund} to sender")
        self._publish(EventType.STREAM_CANCELLED, snapshot, refund=str(refund))
        return snapshot

    def get(self, stream_id: str) -> Optional[Stream]:
        with self._table_lock:
            stream = self._streams.get(stream_id)
            lock = self._stream_locks.get(stream_id)
        if stream is None:
            return None
        with lock:
            return replace(stream)

    def streams_for(self, address: str) -> List[Stream]:
        """Streams where ``address`` is sender or recipient."""
        with self._table_lock:
            ids = [
                sid for sid, s in self._streams.items()
                if address in (s.sender, s.recipient)
            ]
        return [s for s in (self.get(sid) for sid in ids) if s is not None]

    def escrowed_total(self) -> int:
        """Sum of unwithdrawn amounts across active streams."""
        with self._table_lock:
            ids = list(self._streams)
        total = 0
        for sid in ids:
            stream = self.get(sid)
            if stream and stream.is_active:
                total += stream.remaining
        return total

    def _publish(self, event: EventType, stream: Stream, **extra):
        if self.notifier:
            self.notifier.publish(event, stream=stream.to_dict(), **extra)
