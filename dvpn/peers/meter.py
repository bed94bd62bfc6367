"""
Bandwidth Meter

Polls the tunnel for cumulative per-peer transfer counters and converts them
into deltas:

    delta = counter_now - counter_prev
    delta = counter_now            (if counter_now < counter_prev)

The second rule covers interface restarts and counter wraps; subtracting
would fabricate negative usage. Deltas are added to the peer's counters in the
PeerLedger and to the UsageAccumulator that the UsageReporter drains.

Peers missing from a poll are left untouched. Disconnection is explicit.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Callable, Dict, Optional, Tuple

from dvpn.errors import CollaboratorFailure, EngineError, NotFound
from dvpn.peers.ledger import PeerLedger
from dvpn.tunnel.control import TunnelControl

logger = logging.getLogger(__name__)


def counter_delta(now: int, prev: int) -> int:
    """Delta between two cumulative counter readings."""
    if now < prev:
        return now
    return now - prev


@dataclass(frozen=True)
class UsageSnapshot:
    """Accumulated usage at a point in time."""

    rx_bytes: int
    tx_bytes: int
    per_peer: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    @property
    def total_bytes(self) -> int:
        return self.rx_bytes + self.tx_bytes


class UsageAccumulator:
    """
    Running usage totals since the last acknowledged report.

    ``settle(snapshot)`` subtracts exactly what a report covered, so usage
    recorded while the report was in flight stays in the accumulator.
    """

    def __init__(self):
        self._lock = RLock()
        self._rx = 0
        self._tx = 0
        self._per_peer: Dict[str, Tuple[int, int]] = {}
        self.lifetime_rx = 0
        self.lifetime_tx = 0

    def add(self, public_key: str, rx: int, tx: int):
        with self._lock:
            self._rx += rx
            self._tx += tx
            prx, ptx = self._per_peer.get(public_key, (0, 0))
            self._per_peer[public_key] = (prx + rx, ptx + tx)
            self.lifetime_rx += rx
            self.lifetime_tx += tx

    def snapshot(self) -> UsageSnapshot:
        with self._lock:
            return UsageSnapshot(self._rx, self._tx, dict(self._per_peer))

    def settle(self, snapshot: UsageSnapshot):
        """Remove the usage covered by an acknowledged report."""
        with self._lock:
            self._rx -= snapshot.rx_bytes
            self._tx -= snapshot.tx_bytes
            for key, (rx, tx) in snapshot.per_peer.items():
                prx, ptx = self._per_peer.get(key, (0, 0))
                remaining = (prx - rx, ptx - tx)
                if remaining == (0, 0):
                    self._per_peer.pop(key, None)
                else:
                    self._per_peer[key] = remaining
        logger.debug(f"Accumulator settled {snapshot.total_bytes} bytes")

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._rx + self._tx

    def peer_usage(self, public_key: str) -> Tuple[int, int]:
        with self._lock:
            return self._per_peer.get(public_key, (0, 0))


@dataclass
class MeterTick:
    """Outcome of one metering pass."""

    peers_polled: int = 0
    peers_updated: int = 0
    bytes_accounted: int = 0
    resets_detected: int = 0


class BandwidthMeter:
    """Converts tunnel counters into accounted usage."""

    def __init__(
        self,
        tunnel: TunnelControl,
        ledger: PeerLedger,
        accumulator: Optional[UsageAccumulator] = None,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize bandwidth meter.

        Args:
            tunnel: Tunnel control to poll
            ledger: Peer ledger receiving per-peer deltas
            accumulator: Usage accumulator receiving global deltas
            timeout: Upper bound on a single poll (seconds)
            clock: Time source for last-seen stamps
        """
        self.tunnel = tunnel
        self.ledger = ledger
        self.accumulator = accumulator or UsageAccumulator()
        self.timeout = timeout
        self.clock = clock

        # public_key -> last (rx, tx) counter reading
        self._previous: Dict[str, Tuple[int, int]] = {}
        self._tick_lock = asyncio.Lock()

        self.stats = {"ticks": 0, "failed_ticks": 0, "bytes_accounted": 0, "counter_resets": 0}

    def baseline(self, public_key: str, rx_bytes: int, tx_bytes: int):
        """Treat the given counter reading as already accounted."""
        self._previous[public_key] = (rx_bytes, tx_bytes)

    def forget(self, public_key: str):
        """Drop the counter baseline for a disconnected peer."""
        self._previous.pop(public_key, None)

    async def tick(self) -> MeterTick:
        """
        Poll the tunnel once and account the deltas.

        Raises:
            CollaboratorFailure: the poll failed or exceeded the timeout
        """
        async with self._tick_lock:
            try:
                counters = await asyncio.wait_for(self.tunnel.list_peers(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                self.stats["failed_ticks"] += 1
                raise CollaboratorFailure(f"Tunnel poll exceeded {self.timeout}s") from e
            except CollaboratorFailure:
                self.stats["failed_ticks"] += 1
                raise

            result = MeterTick(peers_polled=len(counters))
            now = self.clock()

            for entry in counters:
                prev = self._previous.get(entry.public_key, (0, 0))
                self._previous[entry.public_key] = (entry.rx_bytes, entry.tx_bytes)

                if entry.public_key not in self.ledger:
                    # Baseline only: traffic before admission is not billable
                    continue

                if entry.rx_bytes < prev[0] or entry.tx_bytes < prev[1]:
                    result.resets_detected += 1

                rx = counter_delta(entry.rx_bytes, prev[0])
                tx = counter_delta(entry.tx_bytes, prev[1])

                try:
                    self.ledger.update_stats(entry.public_key, rx, tx, active=True, seen_at=now)
                except NotFound:
                    # Removed between the membership check and the update
                    self._previous.pop(entry.public_key, None)
                    continue

                if rx or tx:
                    self.accumulator.add(entry.public_key, rx, tx)
                result.peers_updated += 1
                result.bytes_accounted += rx + tx

            self._prune_baselines(counters)

            self.stats["ticks"] += 1
            self.stats["bytes_accounted"] += result.bytes_accounted
            self.stats["counter_resets"] += result.resets_detected

            if result.resets_detected:
                logger.warning(f"Counter reset detected for {result.resets_detected} peer(s)")
            logger.debug(
                f"Meter tick: polled={result.peers_polled} updated={result.peers_updated} "
                f"bytes={result.bytes_accounted}"
            )
            return result

    def _prune_baselines(self, counters):
        present = {c.public_key for c in counters}
        for key in list(self._previous):
            if key not in present and key not in self.ledger:
                del self._previous[key]

    async def safe_tick(self) -> Optional[MeterTick]:
        """Tick for the scheduler: failures are logged and the tick skipped."""
        try:
            return await self.tick()
        except EngineError as e:
            logger.error(f"Bandwidth poll failed, skipping tick: {e}")
            return None
