"""
Ledger Integration

Connects the node engine to the settlement chain for:
- Usage report and payment ticket submission
- Stream and node account reads
"""

from .connector import (
    LedgerConnector,
    MockLedgerConnector,
    SubmissionReceipt,
    SubstrateLedgerConnector,
    create_ledger_connector,
)

__all__ = [
    "LedgerConnector",
    "MockLedgerConnector",
    "SubmissionReceipt",
    "SubstrateLedgerConnector",
    "create_ledger_connector",
]
