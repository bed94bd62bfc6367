"""
Settlement Ledger

Payment streams, node stake accounts and idempotent payment application,
all backed by an integer custody book.
"""

from .accounts import NodeAccount, NodeRegistry, MAX_REPUTATION, MIN_REPUTATION
from .coordinator import SettlementCoordinator, SettlementOutcome
from .custody import Custody, SLASH_POOL, STAKE_ESCROW, STREAM_ESCROW
from .streams import (
    Stream,
    StreamLedger,
    StreamStatus,
    available_amount,
    derive_stream_id,
)

__all__ = [
    "NodeAccount",
    "NodeRegistry",
    "MAX_REPUTATION",
    "MIN_REPUTATION",
    "SettlementCoordinator",
    "SettlementOutcome",
    "Custody",
    "SLASH_POOL",
    "STAKE_ESCROW",
    "STREAM_ESCROW",
    "Stream",
    "StreamLedger",
    "StreamStatus",
    "available_amount",
    "derive_stream_id",
]
