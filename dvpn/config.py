"""
Node Configuration

Typed configuration for the bandwidth node engine. Values default to the
settings the node ships with and can be overridden from ``DVPN_*``
environment variables via :meth:`NodeConfig.from_env`.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field

# Token amounts are integers in the smallest unit (18 decimals)
TOKEN_UNIT = 10 ** 18


class NodeConfig(BaseModel):
    """Bandwidth node engine configuration."""

    # Ledger connector
    rpc_url: str = Field(
        default="ws://localhost:9944",
        description="Ledger RPC endpoint"
    )
    mock_mode: bool = Field(
        default=True,
        description="Operate the ledger connector in-memory (no chain)"
    )
    node_address: str = Field(default="", description="On-ledger address of this node")

    # Tunnel
    wg_interface: str = Field(default="wg0", description="WireGuard interface name")
    wg_port: int = Field(default=51820, ge=1, le=65535, description="WireGuard listen port")
    wg_subnet: str = Field(default="10.0.0.0/24", description="Client address pool")
    configure_interface: bool = Field(
        default=False,
        description="Write the interface config and bring it up on start"
    )
    persistent_keepalive: Optional[int] = Field(
        default=25,
        description="Keepalive interval pushed to new peers (seconds, None to disable)"
    )

    # Stake and reputation
    min_stake: int = Field(
        default=1000 * TOKEN_UNIT,
        ge=0,
        description="Minimum stake required to register a node"
    )
    slash_amount: int = Field(
        default=500 * TOKEN_UNIT,
        ge=0,
        description="Stake removed per slash (clamped to remaining stake)"
    )
    slash_reputation_penalty: int = Field(
        default=50,
        ge=0,
        le=100,
        description="Reputation points removed per slash"
    )
    reputation_decay_per_day: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Reputation points lost per full inactive day (0 disables)"
    )

    # Settlement
    fee_bps: int = Field(
        default=250,
        ge=0,
        le=10_000,
        description="Protocol fee in basis points"
    )
    min_payment: int = Field(default=1, ge=0, description="Smallest acceptable payment")
    stream_id_policy: Literal["reject", "disambiguate"] = Field(
        default="reject",
        description="Handling of stream id collisions within one second"
    )

    # Scheduling (seconds)
    meter_interval: float = Field(default=10.0, gt=0, description="Bandwidth poll interval")
    report_interval: float = Field(default=300.0, gt=0, description="Usage report interval")
    status_interval: float = Field(
        default=60.0,
        ge=0,
        description="Status heartbeat interval (0 disables)"
    )
    collaborator_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single tunnel or ledger call"
    )
    shutdown_grace: float = Field(
        default=10.0,
        ge=0,
        description="Time allowed for an in-flight tick to finish on shutdown"
    )

    @classmethod
    def from_env(cls) -> "NodeConfig":
        """Build configuration from ``DVPN_*`` environment variables."""
        keepalive = os.getenv("DVPN_PERSISTENT_KEEPALIVE", "25")
        return cls(
            rpc_url=os.getenv("DVPN_RPC_URL", "ws://localhost:9944"),
            mock_mode=os.getenv("DVPN_MOCK_MODE", "true").lower() == "true",
            node_address=os.getenv("DVPN_NODE_ADDRESS", ""),
            wg_interface=os.getenv("DVPN_WG_INTERFACE", "wg0"),
            wg_port=int(os.getenv("DVPN_WG_PORT", "51820")),
            wg_subnet=os.getenv("DVPN_WG_SUBNET", "10.0.0.0/24"),
            configure_interface=os.getenv("DVPN_CONFIGURE_INTERFACE", "false").lower() == "true",
            persistent_keepalive=int(keepalive) if keepalive else None,
            min_stake=int(os.getenv("DVPN_MIN_STAKE", str(1000 * TOKEN_UNIT))),
            slash_amount=int(os.getenv("DVPN_SLASH_AMOUNT", str(500 * TOKEN_UNIT))),
            slash_reputation_penalty=int(os.getenv("DVPN_SLASH_REPUTATION_PENALTY", "50")),
            reputation_decay_per_day=int(os.getenv("DVPN_REPUTATION_DECAY_PER_DAY", "0")),
            fee_bps=int(os.getenv("DVPN_FEE_BPS", "250")),
            min_payment=int(os.getenv("DVPN_MIN_PAYMENT", "1")),
            stream_id_policy=os.getenv("DVPN_STREAM_ID_POLICY", "reject"),
            meter_interval=float(os.getenv("DVPN_METER_INTERVAL", "10")),
            report_interval=float(os.getenv("DVPN_REPORT_INTERVAL", "300")),
            status_interval=float(os.getenv("DVPN_STATUS_INTERVAL", "60")),
            collaborator_timeout=float(os.getenv("DVPN_COLLABORATOR_TIMEOUT", "5")),
            shutdown_grace=float(os.getenv("DVPN_SHUTDOWN_GRACE", "10")),
        )
