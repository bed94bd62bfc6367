"""
Token Custody

Integer balance book used for escrow. Streams escrow the sender's funds and
node registrations escrow stake; every movement is a transfer between named
accounts, so the sum of all balances is conserved.
"""

import logging
from threading import RLock
from typing import Dict, Optional

from dvpn.errors import InsufficientBalance, InvalidArgument

logger = logging.getLogger(__name__)

STREAM_ESCROW = "escrow:streams"
STAKE_ESCROW = "escrow:stake"
SLASH_POOL = "pool:slashed"


def is_strict_int(value) -> bool:
    """True for ints that are not bools."""
    return isinstance(value, int) and not isinstance(value, bool)


class Custody:
    """Thread-safe balance book with atomic transfers."""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = {}
        self._lock = RLock()
        for account, amount in (balances or {}).items():
            self.mint(account, amount)

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def mint(self, account: str, amount: int):
        """Credit new funds to an account (genesis / faucet)."""
        if amount < 0:
            raise InvalidArgument("Mint amount must be non-negative", amount=amount)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount

    def transfer(self, source: str, destination: str, amount: int):
        """
        Move ``amount`` from ``source`` to ``destination``.

        Raises:
            InvalidArgument: non-positive amount
            InsufficientBalance: source balance below amount (nothing moves)
        """
        if not is_strict_int(amount) or amount <= 0:
            raise InvalidArgument("Transfer amount must be a positive integer", amount=amount)

        with self._lock:
            available = self._balances.get(source, 0)
            if available < amount:
                raise InsufficientBalance(
                    f"Insufficient balance in {source}",
                    account=source,
                    available=available,
                    requested=amount,
                )
            self._balances[source] = available - amount
            self._balances[destination] = self._balances.get(destination, 0) + amount

        logger.debug(f"Transfer {amount} {source} -> {destination}")

    def total_supply(self) -> int:
        with self._lock:
            return sum(self._balances.values())

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._balances)
