from __future__ import annotations
import asyncio
import logging
from typing import Iterable, Optional, Protocol
from .connection import Connection
from .models import CONNECTION_STATUS, RouterStats, SignalEvent, parse_signal
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class ConnectionLookup(Protocol):
    def get(self, connection_id: str) -> Optional[Connection]:
        ...

    def open_connections(self) -> Iterable[Connection]:
        ...


class SignalRouter:
    """
    Single consumer of the merged device/simulated event stream.

    Events are handled strictly in arrival order, so per-signal order is kept
    for every subscriber. Delivery never waits on a client: each connection
    has its own bounded queue that drops its oldest event when full.
    """

    def __init__(self, registry: SubscriptionRegistry, connections: ConnectionLookup) -> None:
        self.registry = registry
        self.connections = connections
        self.stats = RouterStats()
        self._queue: asyncio.Queue[SignalEvent] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def publish(self, event: SignalEvent) -> None:
        """Append an event to the input stream. Must be called on the loop."""
        self._queue.put_nowait(event)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="signal-router")
        logger.info("Signal router started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Signal router stopped")

    async def flush(self) -> None:
        """Wait until every event published so far has been fanned out."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.dispatch(event)
            except Exception:
                logger.exception(f"Failed to route {event.type} event")
            finally:
                self._queue.task_done()

    def dispatch(self, event: SignalEvent) -> int:
        """Fan one event out to its targets. Returns the number of deliveries."""
        self.stats.routed += 1
        if event.type == CONNECTION_STATUS:
            targets = list(self.connections.open_connections())
        else:
            signal = parse_signal(event.type)
            if signal is None:
                logger.warning(f"Dropping event of unknown type {event.type!r}")
                return 0
            # snapshot taken under the registry lock, delivery happens outside it
            subscriber_ids = self.registry.subscribers_of(signal)
            targets = [self.connections.get(cid) for cid in subscriber_ids]

        delivered = 0
        for conn in targets:
            if conn is None or not conn.is_open:
                continue
            dropped = conn.deliver(event)
            delivered += 1
            if dropped:
                self.stats.dropped += dropped
                if conn.queue.dropped == dropped:
                    logger.warning(f"{conn} is not keeping up, dropping oldest events")
        self.stats.delivered += delivered
        return delivered
