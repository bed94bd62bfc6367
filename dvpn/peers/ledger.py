"""
Peer Ledger - Authoritative table of tunnel peers.

Each connected client is tracked as a Peer:
- Public key (canonical 44-char padded base64, unique)
- Allowed IPs (CIDR ranges routed to the peer)
- Optional endpoint
- Cumulative rx/tx byte counters (monotonic)
- Last seen timestamp and active flag

Mutations are serialized by a single table lock; readers receive snapshots so
callers can never mutate ledger state through a returned object.
"""

import ipaddress
import logging
import time
from dataclasses import dataclass, field, replace
from threading import RLock
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from dvpn.errors import InvalidArgument, InvalidKeyFormat, NotFound
from dvpn.notify import EventType, NotificationHub
from dvpn.tunnel.control import is_valid_public_key

logger = logging.getLogger(__name__)


@dataclass
class Peer:
    """A client registered on the tunnel."""

    public_key: str
    allowed_ips: FrozenSet[str]
    endpoint: Optional[str] = None
    last_seen: float = field(default_factory=time.time)
    bytes_rx: int = 0
    bytes_tx: int = 0
    is_active: bool = True
    connected_at: float = field(default_factory=time.time)

    @property
    def total_bytes(self) -> int:
        return self.bytes_rx + self.bytes_tx

    def to_dict(self) -> Dict:
        return {
            "publicKey": self.public_key,
            "allowedIPs": sorted(self.allowed_ips),
            "endpoint": self.endpoint,
            "lastSeen": self.last_seen,
            "bytesRx": self.bytes_rx,
            "bytesTx": self.bytes_tx,
            "isActive": self.is_active,
        }


def normalize_allowed_ips(allowed_ips: Iterable[str]) -> FrozenSet[str]:
    """
    Parse every entry as a CIDR range.

    Raises:
        InvalidArgument: if the list is empty or any entry fails to parse
    """
    if isinstance(allowed_ips, str):
        allowed_ips = [allowed_ips]

    networks = set()
    for entry in allowed_ips:
        try:
            networks.add(str(ipaddress.ip_network(str(entry).strip(), strict=False)))
        except ValueError as e:
            raise InvalidArgument(f"Invalid CIDR in allowed IPs: {entry!r}", entry=entry) from e

    if not networks:
        raise InvalidArgument("At least one allowed IP range is required")
    return frozenset(networks)


class PeerLedger:
    """
    In-memory peer table with synchronized operations.

    ``update_stats`` is the metering loop's write path; connect/disconnect
    requests use ``add_peer`` / ``remove_peer``.
    """

    def __init__(
        self,
        notifier: Optional[NotificationHub] = None,
        clock: Callable[[], float] = time.time
    ):
        self._peers: Dict[str, Peer] = {}
        self._lock = RLock()
        self.notifier = notifier
        self.clock = clock

    def add_peer(
        self,
        public_key: str,
        allowed_ips: Iterable[str],
        endpoint: Optional[str] = None
    ) -> Peer:
        """
        Register a peer, or re-register an existing one.

        Re-registration replaces allowed IPs and endpoint but keeps the
        accumulated counters.

        Args:
            public_key: Peer's tunnel public key
            allowed_ips: CIDR ranges routed to the peer
            endpoint: Optional ``host:port`` of the peer

        Returns:
            Snapshot of the stored peer

        Raises:
            InvalidKeyFormat: key is not a canonical tunnel key
            InvalidArgument: an allowed IP entry is not valid CIDR
        """
        if not is_valid_public_key(public_key):
            raise InvalidKeyFormat("Invalid tunnel public key format", public_key=public_key)
        networks = normalize_allowed_ips(allowed_ips)

        now = self.clock()
        with self._lock:
            existing = self._peers.get(public_key)
            if existing:
                existing.allowed_ips = networks
                existing.endpoint = endpoint
                existing.last_seen = now
                existing.is_active = True
                peer = existing
                logger.info(f"Re-registered peer {public_key[:8]}... ({', '.join(sorted(networks))})")
            else:
                peer = Peer(
                    public_key=public_key,
                    allowed_ips=networks,
                    endpoint=endpoint,
                    last_seen=now,
                    connected_at=now,
                )
                self._peers[public_key] = peer
                logger.info(f"Added peer {public_key[:8]}... ({', '.join(sorted(networks))})")
            snapshot = replace(peer)

        if self.notifier:
            self.notifier.publish(EventType.PEER_ADDED, peer=snapshot.to_dict())
        return snapshot

    def remove_peer(self, public_key: str) -> Optional[Peer]:
        """Remove a peer. Unknown keys are a no-op; returns the removed peer if any."""
        with self._lock:
            peer = self._peers.pop(public_key, None)

        if peer is None:
            return None

        logger.info(
            f"Removed peer {public_key[:8]}... "
            f"(rx={peer.bytes_rx}, tx={peer.bytes_tx})"
        )
        if self.notifier:
            self.notifier.publish(EventType.PEER_REMOVED, publicKey=public_key)
        return peer

    def get(self, public_key: str) -> Optional[Peer]:
        with self._lock:
            peer = self._peers.get(public_key)
            return replace(peer) if peer else None

    def list(self) -> List[Peer]:
        with self._lock:
            return [replace(p) for p in self._peers.values()]

    def __contains__(self, public_key: str) -> bool:
        with self._lock:
            return public_key in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def update_stats(
        self,
        public_key: str,
        rx: int,
        tx: int,
        active: bool = True,
        seen_at: Optional[float] = None
    ) -> Peer:
        """
        Add transfer deltas to a peer and refresh its liveness.

        Raises:
            InvalidArgument: negative delta
            NotFound: peer is not registered
        """
        if rx < 0 or tx < 0:
            raise InvalidArgument("Transfer deltas must be non-negative", rx=rx, tx=tx)

        with self._lock:
            peer = self._peers.get(public_key)
            if peer is None:
                raise NotFound(f"Unknown peer {public_key[:8]}...", public_key=public_key)

            was_active = peer.is_active
            peer.bytes_rx += rx
            peer.bytes_tx += tx
            peer.last_seen = seen_at if seen_at is not None else self.clock()
            peer.is_active = active
            snapshot = replace(peer)

        if was_active != active and self.notifier:
            self.notifier.publish(EventType.STATUS_CHANGED, publicKey=public_key, isActive=active)
        return snapshot

    def total_bytes(self) -> int:
        with self._lock:
            return sum(p.total_bytes for p in self._peers.values())

    def mark_stale(self, timeout: float) -> List[str]:
        """
        Caller-driven staleness policy: mark peers not seen within ``timeout``
        seconds as inactive. Peers are never removed here.
        """
        now = self.clock()
        changed = []
        with self._lock:
            for peer in self._peers.values():
                if peer.is_active and now - peer.last_seen > timeout:
                    peer.is_active = False
                    changed.append(peer.public_key)

        for key in changed:
            logger.info(f"Peer {key[:8]}... marked inactive (not seen for {timeout}s)")
            if self.notifier:
                self.notifier.publish(EventType.STATUS_CHANGED, publicKey=key, isActive=False)
        return changed
