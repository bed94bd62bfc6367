"""
Client address pool.

Hands out one host address per connected client from the tunnel subnet. The
network address, the broadcast address and the first host (the server's own
tunnel address) are never assigned.
"""

import logging
from ipaddress import ip_address, ip_network
from threading import RLock
from typing import Dict, Iterable, Optional

from dvpn.errors import InvalidArgument, InvalidState

logger = logging.getLogger(__name__)


class AddressPool:
    """Deterministic lowest-free allocation of client addresses."""

    def __init__(self, subnet: str):
        try:
            self.network = ip_network(subnet, strict=False)
        except ValueError as e:
            raise InvalidArgument(f"Invalid tunnel subnet: {subnet}", subnet=subnet) from e

        if self.network.num_addresses < 4:
            raise InvalidArgument("Tunnel subnet too small for clients", subnet=subnet)

        self.server_address = self.network.network_address + 1
        self._assigned: Dict[str, str] = {}
        self._lock = RLock()

    @property
    def host_prefix(self) -> int:
        return self.network.max_prefixlen

    def allocate(self, public_key: str) -> str:
        """
        Return the client's address, assigning the lowest free one if needed.

        Raises:
            InvalidState: pool exhausted
        """
        with self._lock:
            existing = self._assigned.get(public_key)
            if existing:
                return existing

            in_use = set(self._assigned.values())
            for host in self.network.hosts():
                if host == self.server_address:
                    continue
                candidate = str(host)
                if candidate not in in_use:
                    self._assigned[public_key] = candidate
                    logger.debug(f"Allocated {candidate} to {public_key[:8]}...")
                    return candidate

        raise InvalidState("Client address pool exhausted", subnet=str(self.network))

    def reserve_from(self, public_key: str, allowed_ips: Iterable[str]) -> Optional[str]:
        """
        Record the pool address a client already routes to, e.g. a peer found on
        the tunnel at startup. The first single-host entry inside the pool wins.

        Returns:
            The reserved address, or None when no entry falls inside the pool

        Raises:
            InvalidState: the address is held by another client
        """
        for entry in allowed_ips:
            try:
                network = ip_network(str(entry).strip(), strict=False)
            except ValueError:
                continue
            if network.num_addresses != 1:
                continue
            host = network.network_address
            if host not in self.network or host in (
                self.network.network_address,
                self.network.broadcast_address,
                self.server_address,
            ):
                continue

            candidate = str(host)
            with self._lock:
                for holder, address in self._assigned.items():
                    if address == candidate and holder != public_key:
                        raise InvalidState(
                            f"Address {candidate} already assigned",
                            address=candidate,
                        )
                self._assigned[public_key] = candidate
            logger.debug(f"Reserved {candidate} for {public_key[:8]}...")
            return candidate
        return None

    def release(self, public_key: str) -> Optional[str]:
        with self._lock:
            return self._assigned.pop(public_key, None)

    def address_of(self, public_key: str) -> Optional[str]:
        with self._lock:
            return self._assigned.get(public_key)

    def is_assigned(self, address: str) -> bool:
        with self._lock:
            return str(ip_address(address)) in self._assigned.values()

    def __len__(self) -> int:
        with self._lock:
            return len(self._assigned)
