"""
Settlement Coordinator

Applies payment tickets to node accounts exactly once:

1. payment_id = hash(sender, recipient, amount, timestamp)
2. Already processed -> success, no effect (usage reports are retried)
3. Validate amount >= min_payment and recipient is an active node
4. fee = floor(amount * fee_bps / 10000), net = amount - fee
5. Mark processed, add fee to the fee pool, credit net earnings
"""

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Optional, Set

from dvpn.errors import EngineError, InvalidArgument, InvalidState, Unauthorized
from dvpn.messages import PaymentTicket
from dvpn.notify import EventType, NotificationHub
from dvpn.settlement.accounts import NodeAccount, NodeRegistry
from dvpn.settlement.custody import is_strict_int

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of processing one ticket."""

    payment_id: str
    applied: bool
    fee: int = 0
    net: int = 0
    account: Optional[NodeAccount] = None


class SettlementCoordinator:
    """Idempotent payment application with protocol fee deduction."""

    def __init__(
        self,
        registry: NodeRegistry,
        fee_bps: int,
        min_payment: int,
        verifier: Optional[Callable[[PaymentTicket], bool]] = None,
        notifier: Optional[NotificationHub] = None
    ):
        """
        Initialize settlement coordinator.

        Args:
            registry: Node accounts credited with net earnings
            fee_bps: Protocol fee in basis points (0-10000)
            min_payment: Smallest accepted ticket amount
            verifier: Optional signature check for incoming tickets
            notifier: Optional notification hub
        """
        if not 0 <= fee_bps <= BPS_DENOMINATOR:
            raise InvalidArgument("fee_bps must be within 0..10000", fee_bps=fee_bps)

        self.registry = registry
        self.fee_bps = fee_bps
        self.min_payment = min_payment
        self.verifier = verifier
        self.notifier = notifier

        self.fee_pool = 0
        self._processed: Set[str] = set()
        self._lock = RLock()

        self.stats = {"applied": 0, "duplicates": 0, "rejected": 0}

    def compute_fee(self, amount: int) -> int:
        return amount * self.fee_bps // BPS_DENOMINATOR

    def is_processed(self, payment_id: str) -> bool:
        with self._lock:
            return payment_id in self._processed

    def process_payment(self, ticket: PaymentTicket) -> SettlementOutcome:
        """
        Apply a payment ticket.

        Returns:
            SettlementOutcome with ``applied=False`` for an already processed ticket

        Raises:
            InvalidArgument: amount below min_payment or negative bandwidth
            Unauthorized: ticket signature rejected by the verifier
            InvalidState / NotFound: recipient is not an active node
        """
        pid = ticket.payment_id

        with self._lock:
            if pid in self._processed:
                self.stats["duplicates"] += 1
                logger.info(f"Payment {pid[:16]} already processed, ignoring")
                return SettlementOutcome(payment_id=pid, applied=False)

            try:
                self._validate(ticket)
            except EngineError:
                self.stats["rejected"] += 1
                raise

            fee = self.compute_fee(ticket.amount)
            net = ticket.amount - fee

            self._processed.add(pid)
            try:
                account = self.registry.credit_earnings(ticket.recipient, net, ticket.bandwidth)
            except EngineError:
                # Recipient deactivated concurrently; nothing was applied
                self._processed.discard(pid)
                self.stats["rejected"] += 1
                raise

            self.fee_pool += fee
            self.stats["applied"] += 1

        logger.info(
            f"Payment {pid[:16]} applied: {ticket.recipient} +{net} "
            f"(fee {fee}, {ticket.bandwidth} bytes)"
        )
        if self.notifier:
            self.notifier.publish(
                EventType.PAYMENT_PROCESSED,
                paymentId=pid,
                recipient=ticket.recipient,
                net=str(net),
                fee=str(fee),
            )
        return SettlementOutcome(payment_id=pid, applied=True, fee=fee, net=net, account=account)

    def _validate(self, ticket: PaymentTicket):
        if not is_strict_int(ticket.amount) or ticket.amount < self.min_payment or ticket.amount <= 0:
            raise InvalidArgument(
                f"Payment amount below minimum {self.min_payment}",
                amount=ticket.amount,
                min_payment=self.min_payment,
            )
        if ticket.bandwidth < 0:
            raise InvalidArgument("Ticket bandwidth must be non-negative", bandwidth=ticket.bandwidth)
        if self.verifier and not self.verifier(ticket):
            raise Unauthorized("Payment ticket signature rejected", recipient=ticket.recipient)
        if not self.registry.is_active(ticket.recipient):
            raise InvalidState("Recipient is not an active node", recipient=ticket.recipient)
