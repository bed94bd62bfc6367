"""
Peer Accounting

Peer ledger, bandwidth metering and usage reporting.
"""

from .ledger import Peer, PeerLedger, normalize_allowed_ips
from .meter import BandwidthMeter, MeterTick, UsageAccumulator, UsageSnapshot, counter_delta
from .reporter import Ed25519ReportSigner, ReportSigner, UsageReporter

__all__ = [
    "Peer",
    "PeerLedger",
    "normalize_allowed_ips",
    "BandwidthMeter",
    "MeterTick",
    "UsageAccumulator",
    "UsageSnapshot",
    "counter_delta",
    "Ed25519ReportSigner",
    "ReportSigner",
    "UsageReporter",
]
