"""
Usage Reporter

Periodically turns accumulated bandwidth into a signed UsageReport and submits
it to the ledger. The accumulator is settled only after the ledger accepts the
report; a failed submission keeps the signed report pending and the next tick
resubmits it unchanged (same timestamp, same report id), so the ledger can
deduplicate and usage is never lost or counted twice.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from dvpn.errors import CollaboratorFailure, EngineError
from dvpn.messages import PaymentTicket, UsageReport
from dvpn.notify import EventType, NotificationHub
from dvpn.peers.meter import UsageAccumulator, UsageSnapshot

logger = logging.getLogger(__name__)


class ReportSigner(ABC):
    """Signs report payloads on behalf of the node."""

    @abstractmethod
    def sign(self, payload: bytes) -> str:
        """Return a hex signature over payload."""

    @property
    @abstractmethod
    def public_key_hex(self) -> str:
        """Hex-encoded public key matching the signatures."""


class Ed25519ReportSigner(ReportSigner):
    """Ed25519 signer backed by the cryptography package."""

    def __init__(self, private_key: Optional[ed25519.Ed25519PrivateKey] = None):
        self.private_key = private_key or ed25519.Ed25519PrivateKey.generate()
        self.public_key = self.private_key.public_key()

    @classmethod
    def from_file(cls, key_path: str) -> "Ed25519ReportSigner":
        """Load the node key from PEM, generating and saving one if missing."""
        path = Path(key_path)

        if path.exists():
            with open(path, "rb") as f:
                private_key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(private_key, ed25519.Ed25519PrivateKey):
                raise EngineError(f"{key_path} does not hold an Ed25519 key")
            logger.info("Loaded existing node signing key")
            return cls(private_key)

        os.makedirs(path.parent, exist_ok=True)
        private_key = ed25519.Ed25519PrivateKey.generate()
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        with open(path, "wb") as f:
            f.write(pem)
        logger.info("Generated new node signing key")
        return cls(private_key)

    @property
    def public_key_hex(self) -> str:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        ).hex()

    def sign(self, payload: bytes) -> str:
        return self.private_key.sign(payload).hex()

    @staticmethod
    def verify(public_key_hex: str, payload: bytes, signature: str) -> bool:
        """Check a hex signature against a hex public key."""
        try:
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
            public_key.verify(bytes.fromhex(signature), payload)
            return True
        except (InvalidSignature, ValueError):
            return False


class UsageReporter:
    """Submits signed usage reports and settles the accumulator on ack."""

    def __init__(
        self,
        accumulator: UsageAccumulator,
        signer: ReportSigner,
        connector,
        node_address: str,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
        on_ticket: Optional[Callable[[PaymentTicket], None]] = None,
        notifier: Optional[NotificationHub] = None
    ):
        """
        Initialize usage reporter.

        Args:
            accumulator: Usage accumulated by the bandwidth meter
            signer: Report signer
            connector: LedgerConnector receiving reports
            node_address: On-ledger address reports are filed under
            timeout: Upper bound on a single submission (seconds)
            clock: Time source for report timestamps
            on_ticket: Called with the payment ticket carried by a receipt
            notifier: Optional notification hub
        """
        self.accumulator = accumulator
        self.signer = signer
        self.connector = connector
        self.node_address = node_address
        self.timeout = timeout
        self.clock = clock
        self.on_ticket = on_ticket
        self.notifier = notifier

        self._pending: Optional[Tuple[UsageReport, UsageSnapshot]] = None
        self._sequence = 0
        self._tick_lock = asyncio.Lock()

        self.stats = {"submitted": 0, "failed": 0, "bytes_reported": 0}

    @property
    def pending_report(self) -> Optional[UsageReport]:
        return self._pending[0] if self._pending else None

    def build_report(self, snapshot: UsageSnapshot) -> UsageReport:
        self._sequence += 1
        report = UsageReport(
            node=self.node_address,
            bandwidth=snapshot.total_bytes,
            timestamp=int(self.clock()),
            rx_bytes=snapshot.rx_bytes,
            tx_bytes=snapshot.tx_bytes,
            sequence=self._sequence,
        )
        return report.with_signature(self.signer.sign(report.signing_payload()))

    async def tick(self):
        """
        Submit the pending report, or a new one for accumulated usage.

        Returns:
            The ledger receipt, or None when there was nothing to report

        Raises:
            CollaboratorFailure: submission failed, timed out or was rejected;
                the report stays pending
        """
        async with self._tick_lock:
            if self._pending is None:
                snapshot = self.accumulator.snapshot()
                if snapshot.total_bytes == 0:
                    logger.debug("No usage to report")
                    return None
                self._pending = (self.build_report(snapshot), snapshot)

            report, snapshot = self._pending

            try:
                receipt = await asyncio.wait_for(
                    self.connector.submit_usage_report(report),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError as e:
                self.stats["failed"] += 1
                raise CollaboratorFailure(
                    f"Usage report submission exceeded {self.timeout}s",
                    report_id=report.report_id,
                ) from e
            except CollaboratorFailure:
                self.stats["failed"] += 1
                raise

            if not receipt.accepted:
                self.stats["failed"] += 1
                raise CollaboratorFailure(
                    f"Usage report rejected: {receipt.error}",
                    report_id=report.report_id,
                )

            self.accumulator.settle(snapshot)
            self._pending = None
            self.stats["submitted"] += 1
            self.stats["bytes_reported"] += report.bandwidth

        logger.info(f"Reported {report.bandwidth} bytes (report {report.report_id[:16]})")
        if self.notifier:
            self.notifier.publish(
                EventType.USAGE_REPORTED,
                reportId=report.report_id,
                bandwidth=report.bandwidth,
                timestamp=report.timestamp,
            )

        if receipt.ticket is not None and self.on_ticket:
            try:
                self.on_ticket(receipt.ticket)
            except EngineError as e:
                logger.error(f"Payment for report {report.report_id[:16]} not applied: {e}")

        return receipt

    async def safe_tick(self):
        """Tick for the scheduler: failures are logged and retried next interval."""
        try:
            return await self.tick()
        except EngineError as e:
            logger.error(f"Usage report failed, will retry: {e}")
            return None
