"""
Notification Hub

Best-effort fan-out of engine events (peer added/removed, stream and account
status changes) to subscribers such as a WebSocket layer. A subscriber that
raises is dropped; the failure never reaches the operation that published the
event.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of engine notifications."""

    PEER_ADDED = "peer_added"
    PEER_REMOVED = "peer_removed"
    STATUS_CHANGED = "status_changed"
    STREAM_CREATED = "stream_created"
    STREAM_COMPLETED = "stream_completed"
    STREAM_CANCELLED = "stream_cancelled"
    NODE_REGISTERED = "node_registered"
    NODE_UNREGISTERED = "node_unregistered"
    NODE_SLASHED = "node_slashed"
    USAGE_REPORTED = "usage_reported"
    PAYMENT_PROCESSED = "payment_processed"


@dataclass
class Notification:
    """Event delivered to subscribers."""

    event: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.event.value, "payload": self.payload, "timestamp": self.timestamp}


Subscriber = Callable[[Notification], None]


class NotificationHub:
    """Subscriber registry with best-effort delivery."""

    def __init__(self):
        self._subscribers: Dict[int, Subscriber] = {}
        self._ids = itertools.count(1)
        self._lock = RLock()
        self.stats = {"published": 0, "delivered": 0, "dropped_subscribers": 0}

    def subscribe(self, callback: Subscriber) -> int:
        """Register a subscriber and return its id."""
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = callback
        logger.debug(f"Subscriber {sub_id} registered")
        return sub_id

    def unsubscribe(self, sub_id: int) -> bool:
        with self._lock:
            return self._subscribers.pop(sub_id, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: EventType, **payload: Any) -> int:
        """
        Deliver an event to every subscriber.

        Returns:
            Number of subscribers that accepted the event
        """
        notification = Notification(event=event, payload=payload)
        with self._lock:
            targets: List = list(self._subscribers.items())

        delivered = 0
        dead = []
        for sub_id, callback in targets:
            try:
                callback(notification)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber {sub_id} after failed notify: {e}")
                dead.append(sub_id)

        with self._lock:
            for sub_id in dead:
                if self._subscribers.pop(sub_id, None) is not None:
                    self.stats["dropped_subscribers"] += 1
            self.stats["published"] += 1
            self.stats["delivered"] += delivered

        return delivered
