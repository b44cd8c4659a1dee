"""
Reload Broadcast Layer

RESPONSIBILITY: Fan-out of ReloadSignals to connected browsers
ALLOWED INPUTS: ReloadSignal from the Coordinator (single publisher)
OUTPUTS: Per-connection signal queues drained by the HTTP layer

WHAT THIS LAYER MUST NOT DO:
============================
- Queue signals for clients that were not subscribed at publish time
- Let one failing client affect delivery to the others
- Block the publisher (delivery never awaits)

Everything here runs on the event loop thread.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Set
import asyncio
import itertools
import logging

from ..contracts.base import DeliveryError
from ..contracts.events import ReloadSignal, AuditEventType
from ..observability import Observability

logger = logging.getLogger(__name__)


@dataclass
class BroadcastConfig:
    """Per-connection queue capacity before a client counts as stuck."""
    capacity: int = 16

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")


_CLOSED = object()


class ClientConnection:
    """
    One browser-side reload subscription.

    Signals wait in a bounded queue until the HTTP layer forwards them.
    A full queue means the client stopped reading; delivery then fails
    and the broadcaster drops the connection.
    """

    def __init__(self, client_id: int, capacity: int):
        self.client_id = client_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, signal: ReloadSignal):
        if self._closed:
            raise DeliveryError("connection is closed", client=str(self.client_id))
        try:
            self._queue.put_nowait(signal)
        except asyncio.QueueFull:
            raise DeliveryError("client is not consuming signals", client=str(self.client_id))

    async def receive(self) -> Optional[ReloadSignal]:
        """Next signal, or None once the connection is closed."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self):
        if self._closed:
            return
        self._closed = True
        # Pending signals are moot once closed; make room for the wake-up
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ReloadSignal:
        signal = await self.receive()
        if signal is None:
            raise StopAsyncIteration
        return signal

    def __repr__(self) -> str:
        return f"ClientConnection(client_id={self.client_id}, closed={self._closed})"


class ReloadBroadcaster:
    """
    Subscriber registry with explicit add/remove.
    """

    def __init__(self, config: Optional[BroadcastConfig] = None, observability: Optional[Observability] = None):
        self._config = config or BroadcastConfig()
        self._observability = observability or Observability()
        self._subscribers: Set[ClientConnection] = set()
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> ClientConnection:
        connection = ClientConnection(next(self._ids), self._config.capacity)
        self._subscribers.add(connection)
        self._observability.record(
            "broadcast", "subscribed", AuditEventType.SUBSCRIPTION,
            str(connection.client_id), subscribers=str(len(self._subscribers)),
        )
        return connection

    def unsubscribe(self, connection: ClientConnection):
        if connection in self._subscribers:
            self._subscribers.discard(connection)
            self._observability.record(
                "broadcast", "unsubscribed", AuditEventType.SUBSCRIPTION,
                str(connection.client_id), subscribers=str(len(self._subscribers)),
            )
        connection.close()

    def publish(self, signal: ReloadSignal) -> int:
        """
        Deliver to every current subscriber. Returns how many accepted it.
        """
        delivered = 0
        for connection in list(self._subscribers):
            try:
                connection.deliver(signal)
            except DeliveryError as e:
                logger.info("dropping reload client %s: %s", connection.client_id, e.message)
                self._observability.metrics.increment("deliveries_failed_total")
                self.unsubscribe(connection)
                continue
            delivered += 1

        self._observability.metrics.increment("reloads_published_total")
        self._observability.record(
            "broadcast", "published", AuditEventType.BROADCAST,
            signal.path.value if signal.path else None,
            delivered=str(delivered),
        )
        return delivered

    def close_all(self):
        """Close every connection; used on shutdown."""
        for connection in list(self._subscribers):
            self.unsubscribe(connection)
