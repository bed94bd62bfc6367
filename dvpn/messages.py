"""
Signed settlement messages exchanged with the ledger.

- UsageReport: a node's claim of bandwidth delivered since its last report
- PaymentTicket: a payment owed to a node for delivered bandwidth

Both are serialized with msgpack for signing and hashing so that the byte
representation is independent of dict ordering.
"""

import hashlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict

import msgpack


def canonical_bytes(fields: Dict[str, Any]) -> bytes:
    """Deterministic msgpack encoding of a flat mapping (keys sorted)."""
    return msgpack.packb(sorted(fields.items()), use_bin_type=True)


@dataclass(frozen=True)
class UsageReport:
    """Bandwidth usage claim submitted to the ledger."""

    node: str
    bandwidth: int
    timestamp: int
    rx_bytes: int = 0
    tx_bytes: int = 0
    sequence: int = 0
    signature: str = ""

    def signing_payload(self) -> bytes:
        # Everything but the signature
        return canonical_bytes({
            "node": self.node,
            "bandwidth": self.bandwidth,
            "timestamp": self.timestamp,
            "rx_bytes": self.rx_bytes,
            "tx_bytes": self.tx_bytes,
            "sequence": self.sequence,
        })

    @property
    def report_id(self) -> str:
        return hashlib.sha256(self.signing_payload()).hexdigest()

    def with_signature(self, signature: str) -> "UsageReport":
        return replace(self, signature=signature)

    def to_bytes(self) -> bytes:
        return msgpack.packb({
            "node": self.node,
            "bandwidth": self.bandwidth,
            "timestamp": self.timestamp,
            "rx_bytes": self.rx_bytes,
            "tx_bytes": self.tx_bytes,
            "sequence": self.sequence,
            "signature": self.signature,
        })

    @staticmethod
    def from_bytes(data: bytes) -> "UsageReport":
        d = msgpack.unpackb(data)
        return UsageReport(
            node=d["node"],
            bandwidth=d["bandwidth"],
            timestamp=d["timestamp"],
            rx_bytes=d.get("rx_bytes", 0),
            tx_bytes=d.get("tx_bytes", 0),
            sequence=d.get("sequence", 0),
            signature=d.get("signature", ""),
        )


@dataclass(frozen=True)
class PaymentTicket:
    """
    Payment owed to a node.

    The ticket's identity is ``(sender, recipient, amount, timestamp)``;
    bandwidth and signature do not participate, so a resubmitted ticket maps
    to the same payment id.
    """

    sender: str
    recipient: str
    amount: int
    timestamp: int
    bandwidth: int = 0
    signature: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def payment_id(self) -> str:
        return payment_id(self.sender, self.recipient, self.amount, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "bandwidth": self.bandwidth,
            "timestamp": self.timestamp,
            "signature": self.signature,
        }


def payment_id(sender: str, recipient: str, amount: int, timestamp: int) -> str:
    """Identity hash of a payment."""
    return hashlib.sha256(canonical_bytes({
        "sender": sender,
        "recipient": recipient,
        # Token amounts can exceed msgpack's 64-bit integer range
        "amount": str(int(amount)),
        "timestamp": int(timestamp),
    })).hexdigest()
