"""
Ledger Connector

Connects the node engine to the settlement chain's PaymentHub and
NodeRegistry pallets for:
- Usage report submission
- Payment ticket submission
- Stream and node account reads
- Balance queries

Two modes:
- mock: in-memory ledger for development nodes and tests
- live: extrinsics over substrate-interface

Author: dVPN Node Team
License: MIT
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from dvpn.errors import CollaboratorFailure, NotFound
from dvpn.messages import PaymentTicket, UsageReport
from dvpn.settlement.accounts import NodeAccount
from dvpn.settlement.streams import Stream, StreamStatus


@dataclass(frozen=True)
class SubmissionReceipt:
    """Acknowledgement of an accepted ledger submission."""

    accepted: bool
    tx_hash: str = ""
    ticket: Optional[PaymentTicket] = None
    error: str = ""


class LedgerConnector(ABC):
    """Abstract ledger/chain collaborator."""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Token balance of an address."""

    @abstractmethod
    async def submit_usage_report(self, report: UsageReport) -> SubmissionReceipt:
        """Submit a signed usage report; raises CollaboratorFailure on RPC error."""

    @abstractmethod
    async def submit_payment_ticket(self, ticket: PaymentTicket) -> SubmissionReceipt:
        """Submit a payment ticket for on-chain settlement."""

    @abstractmethod
    async def read_stream(self, stream_id: str) -> Stream:
        """Read a stream record."""

    @abstractmethod
    async def read_node_account(self, owner: str) -> NodeAccount:
        """Read a node account record."""

    async def connect(self):
        """Open the connection. Default: nothing to open."""

    async def disconnect(self):
        """Close the connection. Default: nothing to close."""


class MockLedgerConnector(LedgerConnector):
    """
    In-memory ledger.

    With ``price_per_byte`` set, each accepted usage report is answered with a
    payment ticket for ``bandwidth * price_per_byte`` from ``payer``.
    Resubmitting a report returns the original receipt. Ticket timestamps
    increase strictly per recipient, so distinct reports filed in the same
    second still yield distinct payments.
    """

    def __init__(
        self,
        price_per_byte: int = 0,
        payer: str = "payment-hub",
        stream_ledger: Any = None,
        node_registry: Any = None,
        custody: Any = None
    ):
        self.price_per_byte = price_per_byte
        self.payer = payer
        self.stream_ledger = stream_ledger
        self.node_registry = node_registry
        self.custody = custody

        self.reports: List[UsageReport] = []
        self.tickets: List[PaymentTicket] = []
        self._receipts: Dict[str, SubmissionReceipt] = {}
        self._last_ticket_at: Dict[str, int] = {}
        self.fail_next = 0
        self.connected = False

    async def connect(self):
        self.connected = True
        logger.info("📦 Ledger connector in MOCK mode (no chain)")

    async def disconnect(self):
        self.connected = False

    def _maybe_fail(self, operation: str):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise CollaboratorFailure(f"[MOCK] {operation} rejected by ledger", operation=operation)

    async def get_balance(self, address: str) -> int:
        if self.custody is None:
            return 0
        return self.custody.balance_of(address)

    async def submit_usage_report(self, report: UsageReport) -> SubmissionReceipt:
        self._maybe_fail("submit_usage_report")

        report_id = report.report_id
        if report_id in self._receipts:
            logger.debug("📦 [MOCK] Duplicate usage report {}", report_id[:16])
            return self._receipts[report_id]

        ticket = None
        if self.price_per_byte:
            issued_at = max(report.timestamp, self._last_ticket_at.get(report.node, -1) + 1)
            self._last_ticket_at[report.node] = issued_at
            ticket = PaymentTicket(
                sender=self.payer,
                recipient=report.node,
                amount=report.bandwidth * self.price_per_byte,
                timestamp=issued_at,
                bandwidth=report.bandwidth,
            )

        receipt = SubmissionReceipt(accepted=True, tx_hash=f"0x{report_id}", ticket=ticket)
        self._receipts[report_id] = receipt
        self.reports.append(report)
        logger.debug("📦 [MOCK] Stored usage report {} ({} bytes)", report_id[:16], report.bandwidth)
        return receipt

    async def submit_payment_ticket(self, ticket: PaymentTicket) -> SubmissionReceipt:
        self._maybe_fail("submit_payment_ticket")
        self.tickets.append(ticket)
        return SubmissionReceipt(accepted=True, tx_hash=f"0x{ticket.payment_id}", ticket=ticket)

    async def read_stream(self, stream_id: str) -> Stream:
        stream = self.stream_ledger.get(stream_id) if self.stream_ledger else None
        if stream is None:
            raise NotFound(f"Stream {stream_id[:16]} not found", stream_id=stream_id)
        return stream

    async def read_node_account(self, owner: str) -> NodeAccount:
        account = self.node_registry.get(owner) if self.node_registry else None
        if account is None:
            raise NotFound(f"Node {owner} is not registered", owner=owner)
        return account


class SubstrateLedgerConnector(LedgerConnector):
    """
    Live connector submitting extrinsics to the PaymentHub / NodeRegistry pallets.

    substrate-interface calls are blocking; they run in worker threads so the
    event loop (and the periodic jobs on it) keep running.
    """

    def __init__(
        self,
        node_url: str = "ws://localhost:9944",
        keypair: Any = None,
        wait_for_inclusion: bool = True
    ):
        """
        Initialize live ledger connector.

        Args:
            node_url: Chain RPC endpoint
            keypair: substrate-interface Keypair used to sign extrinsics
            wait_for_inclusion: Wait for block inclusion before acknowledging
        """
        self.node_url = node_url
        self.keypair = keypair
        self.wait_for_inclusion = wait_for_inclusion
        self.substrate = None

    async def connect(self):
        from substrateinterface import SubstrateInterface

        try:
            self.substrate = await asyncio.to_thread(SubstrateInterface, url=self.node_url)
        except Exception as e:
            logger.error("Failed to connect to ledger: {}", e)
            raise CollaboratorFailure(f"Ledger connection failed: {e}", node_url=self.node_url) from e
        logger.info("✅ Connected to ledger at {}", self.node_url)

    async def disconnect(self):
        if self.substrate:
            self.substrate.close()
            self.substrate = None
        logger.info("Disconnected from ledger")

    def _require_connection(self):
        if self.substrate is None:
            raise CollaboratorFailure("Ledger connector is not connected")

    async def _submit(self, module: str, function: str, params: Dict[str, Any]) -> SubmissionReceipt:
        self._require_connection()
        if not self.keypair:
            raise CollaboratorFailure("No keypair configured - cannot submit extrinsic")

        def submit():
            call = self.substrate.compose_call(
                call_module=module,
                call_function=function,
                call_params=params,
            )
            extrinsic = self.substrate.create_signed_extrinsic(call=call, keypair=self.keypair)
            return self.substrate.submit_extrinsic(
                extrinsic,
                wait_for_inclusion=self.wait_for_inclusion,
            )

        try:
            receipt = await asyncio.to_thread(submit)
        except Exception as e:
            logger.error("{}.{} submission failed: {}", module, function, e)
            raise CollaboratorFailure(f"{module}.{function} failed: {e}", module=module) from e

        if self.wait_for_inclusion and not receipt.is_success:
            logger.error("Extrinsic failed: {}", receipt.error_message)
            raise CollaboratorFailure(
                f"{module}.{function} rejected: {receipt.error_message}",
                module=module,
            )

        logger.info("Submitted {}.{} ({})", module, function, receipt.extrinsic_hash)
        return SubmissionReceipt(accepted=True, tx_hash=receipt.extrinsic_hash or "")

    async def _query(self, module: str, storage_function: str, params: List[Any]) -> Any:
        self._require_connection()
        try:
            result = await asyncio.to_thread(
                self.substrate.query,
                module=module,
                storage_function=storage_function,
                params=params,
            )
        except Exception as e:
            logger.error("Query {}.{} failed: {}", module, storage_function, e)
            raise CollaboratorFailure(f"{module}.{storage_function} query failed: {e}") from e
        return result.value if result is not None else None

    async def get_balance(self, address: str) -> int:
        value = await self._query("System", "Account", [address])
        if not value:
            return 0
        return int(value["data"]["free"])

    async def submit_usage_report(self, report: UsageReport) -> SubmissionReceipt:
        return await self._submit("PaymentHub", "submit_usage_report", {
            "node": report.node,
            "bandwidth": report.bandwidth,
            "timestamp": report.timestamp,
            "rx_bytes": report.rx_bytes,
            "tx_bytes": report.tx_bytes,
            "sequence": report.sequence,
            "signature": report.signature,
        })

    async def submit_payment_ticket(self, ticket: PaymentTicket) -> SubmissionReceipt:
        return await self._submit("PaymentHub", "submit_payment_ticket", {
            "sender": ticket.sender,
            "recipient": ticket.recipient,
            "amount": ticket.amount,
            "bandwidth": ticket.bandwidth,
            "timestamp": ticket.timestamp,
            "signature": ticket.signature,
        })

    async def read_stream(self, stream_id: str) -> Stream:
        value = await self._query("PaymentHub", "Streams", [stream_id])
        if not value:
            raise NotFound(f"Stream {stream_id[:16]} not found", stream_id=stream_id)

        withdrawn, amount = int(value["withdrawn"]), int(value["amount"])
        if value.get("is_active", True):
            status = StreamStatus.ACTIVE
        elif withdrawn == amount:
            status = StreamStatus.COMPLETED
        else:
            status = StreamStatus.CANCELLED

        return Stream(
            stream_id=stream_id,
            sender=value["sender"],
            recipient=value["recipient"],
            amount=amount,
            start_time=int(value["start_time"]),
            end_time=int(value["end_time"]),
            withdrawn=withdrawn,
            status=status,
        )

    async def read_node_account(self, owner: str) -> NodeAccount:
        value = await self._query("NodeRegistry", "Nodes", [owner])
        if not value:
            raise NotFound(f"Node {owner} is not registered", owner=owner)

        return NodeAccount(
            owner=owner,
            metadata=value.get("metadata", ""),
            stake=int(value["stake"]),
            reputation=int(value["reputation"]),
            last_active=float(value["last_active"]),
            is_active=bool(value["is_active"]),
            total_bandwidth_provided=int(value["total_bandwidth_provided"]),
            total_earnings=int(value["total_earnings"]),
        )


def create_ledger_connector(
    mock_mode: bool = True,
    node_url: str = "ws://localhost:9944",
    keypair: Any = None,
    **mock_options: Any
) -> LedgerConnector:
    """Build the connector for the configured mode."""
    if mock_mode:
        return MockLedgerConnector(**mock_options)
    return SubstrateLedgerConnector(node_url=node_url, keypair=keypair)
