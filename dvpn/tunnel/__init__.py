"""
Tunnel Control

Abstract capability for reading transfer counters and configuring peers,
with a WireGuard command-line implementation and an in-memory one.
"""

from .control import (
    KEY_LENGTH,
    InterfaceStatus,
    TunnelControl,
    TunnelPeerCounters,
    is_valid_public_key,
)
from .addresses import AddressPool
from .memory import MemoryTunnel
from .wireguard import (
    WireGuardControl,
    parse_dump_output,
    parse_transfer_output,
    render_config,
)

__all__ = [
    "KEY_LENGTH",
    "InterfaceStatus",
    "TunnelControl",
    "TunnelPeerCounters",
    "is_valid_public_key",
    "AddressPool",
    "MemoryTunnel",
    "WireGuardControl",
    "parse_dump_output",
    "parse_transfer_output",
    "render_config",
]
