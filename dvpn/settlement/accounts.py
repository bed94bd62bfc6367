"""
Node Accounts - Stake, reputation and earnings bookkeeping.

Each registered node carries:
- Stake escrowed at registration (>= min_stake), refunded on unregistration
- Reputation in [0, 100], starting at 100
- Cumulative earnings and bandwidth provided (monotonic)

Slashing is clamped: it removes ``min(slash_amount, stake)`` and never fails
for lack of stake. Stake/reputation mutations are serialized per node.
"""

import logging
import time
from dataclasses import dataclass, replace
from threading import Lock, RLock
from typing import Callable, Dict, List, Optional

from dvpn.errors import InsufficientStake, InvalidArgument, InvalidState, NotFound
from dvpn.notify import EventType, NotificationHub
from dvpn.settlement.custody import SLASH_POOL, STAKE_ESCROW, Custody, is_strict_int

logger = logging.getLogger(__name__)

# Reputation constants
MAX_REPUTATION = 100
MIN_REPUTATION = 0
INITIAL_REPUTATION = MAX_REPUTATION
DEFAULT_SLASH_PENALTY = 50
SECONDS_PER_DAY = 86400


@dataclass
class NodeAccount:
    """Ledger record for a bandwidth node."""

    owner: str
    metadata: str = ""
    stake: int = 0
    reputation: int = INITIAL_REPUTATION
    last_active: float = 0.0
    is_active: bool = False
    total_bandwidth_provided: int = 0
    total_earnings: int = 0
    slash_count: int = 0
    decayed_days: int = 0

    def to_dict(self) -> Dict:
        return {
            "owner": self.owner,
            "metadata": self.metadata,
            "stake": str(self.stake),
            "reputation": self.reputation,
            "lastActive": int(self.last_active),
            "isActive": self.is_active,
            "totalBandwidthProvided": self.total_bandwidth_provided,
            "totalEarnings": str(self.total_earnings),
        }


class NodeRegistry:
    """Registry of node accounts backed by stake escrow in custody."""

    def __init__(
        self,
        custody: Custody,
        min_stake: int,
        slash_amount: int,
        slash_reputation_penalty: int = DEFAULT_SLASH_PENALTY,
        reputation_decay_per_day: int = 0,
        clock: Callable[[], float] = time.time,
        notifier: Optional[NotificationHub] = None
    ):
        """
        Initialize node registry.

        Args:
            custody: Balance book holding stake escrow
            min_stake: Minimum stake accepted by register_node
            slash_amount: Stake removed per slash (before clamping)
            slash_reputation_penalty: Reputation points removed per slash
            reputation_decay_per_day: Points lost per full inactive day (0 disables)
            clock: Time source
            notifier: Optional notification hub
        """
        if min_stake < 0 or slash_amount < 0:
            raise InvalidArgument("Stake thresholds must be non-negative")

        self.custody = custody
        self.min_stake = min_stake
        self.slash_amount = slash_amount
        self.slash_reputation_penalty = slash_reputation_penalty
        self.reputation_decay_per_day = reputation_decay_per_day
        self.clock = clock
        self.notifier = notifier

        self._accounts: Dict[str, NodeAccount] = {}
        self._node_locks: Dict[str, Lock] = {}
        self._table_lock = RLock()

    def _lock_for(self, owner: str) -> Lock:
        """Lock for an owner, created on first registration."""
        with self._table_lock:
            lock = self._node_locks.get(owner)
            if lock is None:
                lock = self._node_locks[owner] = Lock()
            return lock

    def _existing_lock(self, owner: str) -> Lock:
        with self._table_lock:
            lock = self._node_locks.get(owner)
        if lock is None:
            raise NotFound(f"Node {owner} is not registered", owner=owner)
        return lock

    def _account(self, owner: str) -> NodeAccount:
        account = self._accounts.get(owner)
        if account is None:
            raise NotFound(f"Node {owner} is not registered", owner=owner)
        return account

    def register_node(self, owner: str, metadata: str, stake: int) -> NodeAccount:
        """
        Register (or re-register) a node and escrow its stake.

        Raises:
            InsufficientStake: stake below min_stake (nothing escrowed)
            InvalidState: node already has an active registration
            InsufficientBalance: owner cannot fund the stake
        """
        if not owner:
            raise InvalidArgument("Node owner is required")
        if not is_strict_int(stake) or stake < self.min_stake:
            raise InsufficientStake(
                f"Stake {stake} below minimum {self.min_stake}",
                stake=stake,
                min_stake=self.min_stake,
            )

        with self._lock_for(owner):
            existing = self._accounts.get(owner)
            if existing and existing.is_active:
                raise InvalidState("Node already registered", owner=owner)

            self.custody.transfer(owner, STAKE_ESCROW, stake)

            if existing:
                # Lifetime totals survive re-registration
                existing.metadata = metadata
                existing.stake = stake
                existing.reputation = INITIAL_REPUTATION
                existing.is_active = True
                existing.last_active = self.clock()
                existing.decayed_days = 0
                account = existing
            else:
                account = NodeAccount(
                    owner=owner,
                    metadata=metadata,
                    stake=stake,
                    last_active=self.clock(),
                    is_active=True,
                )
                with self._table_lock:
                    self._accounts[owner] = account
            snapshot = replace(account)

        logger.info(f"Registered node {owner} with stake {stake}")
        self._publish(EventType.NODE_REGISTERED, snapshot)
        return snapshot

    def unregister_node(self, owner: str) -> NodeAccount:
        """
        Deactivate a node and refund its remaining stake.

        Raises:
            NotFound: node never registered
            InvalidState: node not active
        """
        with self._existing_lock(owner):
            account = self._account(owner)
            if not account.is_active:
                raise InvalidState("Node is not active", owner=owner)

            refund = account.stake
            if refund > 0:
                self.custody.transfer(STAKE_ESCROW, owner, refund)
            account.stake = 0
            account.is_active = False
            snapshot = replace(account)

        logger.info(f"Unregistered node {owner}, refunded stake {refund}")
        self._publish(EventType.NODE_UNREGISTERED, snapshot, refund=str(refund))
        return snapshot

    def slash_node(self, owner: str, reason: str) -> NodeAccount:
        """
        Slash a node's stake and reputation, clamped at zero.

        Slashed stake moves to the slash pool.

        Raises:
            NotFound: node never registered
        """
        with self._existing_lock(owner):
            account = self._account(owner)

            slash_value = min(self.slash_amount, account.stake)
            if slash_value > 0:
                self.custody.transfer(STAKE_ESCROW, SLASH_POOL, slash_value)
            account.stake -= slash_value
            account.reputation = max(MIN_REPUTATION, account.reputation - self.slash_reputation_penalty)
            account.slash_count += 1
            snapshot = replace(account)

        logger.warning(
            f"Slashed node {owner}: -{slash_value} stake, reputation {snapshot.reputation} "
            f"(reason: {reason})"
        )
        self._publish(EventType.NODE_SLASHED, snapshot, reason=reason, slashed=str(slash_value))
        return snapshot

    def credit_earnings(self, owner: str, amount: int, bandwidth: int) -> NodeAccount:
        """
        Add settled earnings and bandwidth to an active node.

        Raises:
            InvalidArgument: negative amount or bandwidth
            NotFound / InvalidState: node missing or inactive
        """
        if amount < 0 or bandwidth < 0:
            raise InvalidArgument("Earnings and bandwidth must be non-negative", amount=amount)

        with self._existing_lock(owner):
            account = self._account(owner)
            if not account.is_active:
                raise InvalidState("Node is not active", owner=owner)

            account.total_earnings += amount
            account.total_bandwidth_provided += bandwidth
            account.last_active = self.clock()
            account.decayed_days = 0
            snapshot = replace(account)

        logger.debug(f"Credited node {owner}: +{amount} earnings, +{bandwidth} bytes")
        return snapshot

    def apply_decay(self) -> int:
        """
        Lower the reputation of active nodes idle for at least a full day.

        Returns:
            Number of nodes whose reputation changed
        """
        if not self.reputation_decay_per_day:
            return 0

        now = self.clock()
        with self._table_lock:
            owners = list(self._accounts)

        decayed = 0
        for owner in owners:
            with self._existing_lock(owner):
                account = self._accounts[owner]
                if not account.is_active:
                    continue
                days_inactive = int((now - account.last_active) // SECONDS_PER_DAY)
                pending = days_inactive - account.decayed_days
                if pending <= 0:
                    continue
                account.decayed_days = days_inactive
                new_rep = max(MIN_REPUTATION, account.reputation - pending * self.reputation_decay_per_day)
                if new_rep != account.reputation:
                    logger.debug(f"Decayed {owner}: {account.reputation} -> {new_rep}")
                    account.reputation = new_rep
                    decayed += 1

        logger.info(f"Reputation decay applied to {decayed} nodes")
        return decayed

    def get(self, owner: str) -> Optional[NodeAccount]:
        with self._table_lock:
            lock = self._node_locks.get(owner)
        if lock is None:
            return None
        with lock:
            account = self._accounts.get(owner)
            return replace(account) if account else None

    def is_active(self, owner: str) -> bool:
        account = self.get(owner)
        return bool(account and account.is_active)

    def active_nodes(self) -> List[str]:
        with self._table_lock:
            return [owner for owner, a in self._accounts.items() if a.is_active]

    def _publish(self, event: EventType, account: NodeAccount, **extra):
        if self.notifier:
            self.notifier.publish(event, node=account.to_dict(), **extra)
