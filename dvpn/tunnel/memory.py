"""
In-memory tunnel control for development nodes and tests.

Counters are driven explicitly with :meth:`MemoryTunnel.record_transfer`;
:meth:`MemoryTunnel.restart` zeroes them the way an interface restart does.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from dvpn.errors import CollaboratorFailure
from dvpn.tunnel.control import InterfaceStatus, TunnelControl, TunnelPeerCounters

logger = logging.getLogger(__name__)


@dataclass
class _MemoryPeer:
    allowed_ips: List[str]
    endpoint: Optional[str] = None
    keepalive: Optional[int] = None
    rx_bytes: int = 0
    tx_bytes: int = 0


@dataclass
class MemoryTunnel(TunnelControl):
    """Tunnel interface kept entirely in process memory."""

    up: bool = True
    fail_commands: bool = False
    latency: float = 0.0
    peers: Dict[str, _MemoryPeer] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)
    address: Optional[str] = None
    listen_port: Optional[int] = None

    async def _command(self, name: str):
        self.calls.append(name)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_commands:
            raise CollaboratorFailure(f"tunnel command {name} failed", command=name)

    async def list_peers(self) -> List[TunnelPeerCounters]:
        await self._command("list_peers")
        return [
            TunnelPeerCounters(public_key=key, rx_bytes=p.rx_bytes, tx_bytes=p.tx_bytes)
            for key, p in self.peers.items()
        ]

    async def dump_peers(self) -> List[TunnelPeerCounters]:
        await self._command("dump_peers")
        return [
            TunnelPeerCounters(
                public_key=key,
                rx_bytes=p.rx_bytes,
                tx_bytes=p.tx_bytes,
                allowed_ips=tuple(p.allowed_ips),
                endpoint=p.endpoint,
            )
            for key, p in self.peers.items()
        ]

    async def interface_status(self) -> InterfaceStatus:
        return InterfaceStatus(up=self.up, peer_count=len(self.peers) if self.up else 0)

    async def add_peer(
        self,
        public_key: str,
        allowed_ips: Sequence[str],
        endpoint: Optional[str] = None,
        keepalive: Optional[int] = None
    ) -> None:
        await self._command("add_peer")
        existing = self.peers.get(public_key)
        if existing:
            existing.allowed_ips = list(allowed_ips)
            existing.endpoint = endpoint
            existing.keepalive = keepalive
        else:
            self.peers[public_key] = _MemoryPeer(list(allowed_ips), endpoint, keepalive)

    async def remove_peer(self, public_key: str) -> None:
        await self._command("remove_peer")
        self.peers.pop(public_key, None)

    async def configure(self, address: str, listen_port: int) -> None:
        await self._command("configure")
        self.address = address
        self.listen_port = listen_port
        self.up = True

    async def close(self) -> None:
        self.up = False

    def record_transfer(self, public_key: str, rx: int = 0, tx: int = 0):
        """Advance a peer's cumulative counters."""
        peer = self.peers.setdefault(public_key, _MemoryPeer(allowed_ips=[]))
        peer.rx_bytes += rx
        peer.tx_bytes += tx

    def restart(self):
        """Zero all counters, as after an interface restart."""
        for peer in self.peers.values():
            peer.rx_bytes = 0
            peer.tx_bytes = 0
        logger.debug("Memory tunnel counters reset")
