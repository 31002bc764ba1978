"""In-process change feed for table-level refetch notifications.

Writes made through the services publish a :class:`ChangeEvent` per table.
Dashboard streams subscribe to a table and, on any event, refetch the whole
list. Events carry no merge semantics; they only say "something changed".
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

WILDCARD = '*'


@dataclass
class ChangeEvent:
    table: str
    event: str  # INSERT | UPDATE | DELETE
    record: Dict[str, Any] = field(default_factory=dict)
    committed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table,
            'event': self.event,
            'record': self.record,
            'committed_at': self.committed_at,
        }


class Subscription:
    """A bounded queue of events for one listener."""

    def __init__(self, feed: 'ChangeFeed', table: str, maxsize: int) -> None:
        self._feed = feed
        self.table = table
        self._queue: 'queue.Queue[ChangeEvent]' = queue.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Consumers refetch everything anyway; a dropped event is harmless
            # as long as one is still pending.
            logger.debug('Subscription queue full for %s; dropping event', self.table)

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def listen(self, heartbeat: float = 15.0) -> Iterator[Optional[ChangeEvent]]:
        """Yield events as they arrive, and ``None`` on every idle heartbeat."""

        while not self.closed:
            yield self.get(timeout=heartbeat)

    def unsubscribe(self) -> None:
        self.closed = True
        self._feed._remove(self)


class ChangeFeed:
    """Thread-safe publish/subscribe hub keyed by table name."""

    def __init__(self, maxsize: int = 100) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._maxsize = maxsize

    def subscribe(self, table: str = WILDCARD) -> Subscription:
        subscription = Subscription(self, table, self._maxsize)
        with self._lock:
            self._subscribers.setdefault(table, []).append(subscription)
        logger.debug('Subscribed to %s changes', table)
        return subscription

    def publish(self, table: str, event: str, record: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        change = ChangeEvent(table=table, event=event, record=dict(record or {}))
        with self._lock:
            targets = list(self._subscribers.get(table, [])) + list(self._subscribers.get(WILDCARD, []))
        for subscription in targets:
            subscription.deliver(change)
        logger.debug('Published %s on %s to %d subscriber(s)', event, table, len(targets))
        return change

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, []))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscribers.get(subscription.table, [])
            if subscription in listeners:
                listeners.remove(subscription)
            if not listeners:
                self._subscribers.pop(subscription.table, None)
