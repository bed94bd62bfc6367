"""
dVPN Node Engine

Bandwidth metering and settlement for a decentralized VPN node.

Quick Start:
    >>> from dvpn import BandwidthNode, NodeConfig
    >>> from dvpn.tunnel import WireGuardControl
    >>>
    >>> node = BandwidthNode(NodeConfig.from_env(), WireGuardControl("wg0"))
    >>> await node.start()
    >>>
    >>> # Admit a client
    >>> peer = await node.connect_client(client_public_key)
    >>>
    >>> # Operator view
    >>> print(await node.status())

Features:
    - Per-peer bandwidth metering from tunnel counters (restart-safe)
    - Signed usage reports with retry until the ledger acknowledges
    - Linear vesting payment streams with escrow
    - Node staking, slashing and reputation
    - Idempotent payment settlement with protocol fees
"""

from dvpn.config import NodeConfig
from dvpn.errors import EngineError, ErrorKind, OperationResult, run_operation, run_operation_async
from dvpn.node import BandwidthNode
from dvpn.notify import EventType, Notification, NotificationHub

__version__ = "0.1.0"
__author__ = "dVPN Node Team"

__all__ = [
    "BandwidthNode",
    "NodeConfig",
    "EngineError",
    "ErrorKind",
    "OperationResult",
    "run_operation",
    "run_operation_async",
    "EventType",
    "Notification",
    "NotificationHub",
]
