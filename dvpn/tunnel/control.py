"""
Tunnel Control Interface

Capability interface through which the engine reads transfer counters and
mutates peer configuration on the tunnel. Implementations may shell out to
the ``wg`` tool, talk to a control socket, or keep everything in memory;
engine logic only depends on this interface.
"""

import base64
import binascii
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

# 32-byte key, base64 with one '=' of padding
KEY_LENGTH = 44
KEY_BYTES = 32
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9+/]{43}=$")


def is_valid_public_key(public_key: str) -> bool:
    """Check that a key uses the canonical 44-character padded encoding."""
    if not isinstance(public_key, str) or not _KEY_PATTERN.match(public_key):
        return False
    try:
        return len(base64.b64decode(public_key, validate=True)) == KEY_BYTES
    except (binascii.Error, ValueError):
        return False


@dataclass(frozen=True)
class TunnelPeerCounters:
    """
    Cumulative transfer counters for one tunnel peer.

    ``allowed_ips`` and ``endpoint`` are only filled by :meth:`TunnelControl.dump_peers`.
    """

    public_key: str
    rx_bytes: int
    tx_bytes: int
    allowed_ips: Tuple[str, ...] = ()
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class InterfaceStatus:
    """Tunnel interface state."""

    up: bool
    peer_count: int


class TunnelControl(ABC):
    """Abstract tunnel control capability."""

    @abstractmethod
    async def list_peers(self) -> List[TunnelPeerCounters]:
        """Return current cumulative rx/tx counters per peer."""

    @abstractmethod
    async def interface_status(self) -> InterfaceStatus:
        """Return whether the interface is up and how many peers it carries."""

    @abstractmethod
    async def add_peer(
        self,
        public_key: str,
        allowed_ips: Sequence[str],
        endpoint: Optional[str] = None,
        keepalive: Optional[int] = None
    ) -> None:
        """Add or update a peer on the interface."""

    @abstractmethod
    async def remove_peer(self, public_key: str) -> None:
        """Remove a peer from the interface."""

    async def dump_peers(self) -> List[TunnelPeerCounters]:
        """Return counters plus routing configuration. Default: counters only."""
        return await self.list_peers()

    async def configure(self, address: str, listen_port: int) -> None:
        """
        Prepare the interface to serve clients on ``address`` (CIDR) and
        ``listen_port``. Default: nothing to prepare.
        """

    async def close(self) -> None:
        """Release the interface. Default: nothing to release."""
