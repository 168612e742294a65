from __future__ import annotations
import asyncio
import time
import uuid
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional
from .models import SignalEvent


class QueueClosed(Exception):
    """Raised by OutboundQueue.get once the queue is closed and empty."""


class OutboundQueue:
    """
    Per-connection delivery queue.

    Events are bounded: when ``maxsize`` undelivered events are waiting the
    oldest one is dropped to make room. Control messages (command responses)
    sit in a separate lane that is always drained first and never dropped;
    it holds at most ``control_maxsize`` replies. Only touched from the event
    loop.
    """

    def __init__(self, maxsize: int, control_maxsize: int = 128) -> None:
        self.maxsize = max(1, maxsize)
        self.control_maxsize = max(1, control_maxsize)
        self._events: Deque[SignalEvent] = deque()
        self._control: Deque[Dict[str, Any]] = deque()
        self._ready = asyncio.Event()
        self.closed = False
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._events) + len(self._control)

    def put_event(self, event: SignalEvent) -> int:
        """Enqueue an event. Returns how many old events were dropped for it."""
        if self.closed:
            return 0
        dropped = 0
        while len(self._events) >= self.maxsize:
            self._events.popleft()
            dropped += 1
        self._events.append(event)
        self.dropped += dropped
        self._ready.set()
        return dropped

    def put_control(self, message: Dict[str, Any]) -> bool:
        """Enqueue a reply. Returns False when the control lane is full."""
        if self.closed:
            return True
        if len(self._control) >= self.control_maxsize:
            return False
        self._control.append(message)
        self._ready.set()
        return True

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        if self._control:
            return self._control.popleft()
        if self._events:
            return self._events.popleft().to_wire()
        return None

    async def get(self) -> Dict[str, Any]:
        """Wait for the next wire message. Raises QueueClosed after close()."""
        while True:
            if self.closed:
                raise QueueClosed()
            item = self.get_nowait()
            if item is not None:
                return item
            self._ready.clear()
            await self._ready.wait()

    def drain(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        while limit is None or len(out) < limit:
            item = self.get_nowait()
            if item is None:
                break
            out.append(item)
        return out

    def close(self) -> None:
        self.closed = True
        self._events.clear()
        self._control.clear()
        self._ready.set()


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    """One client session on any transport."""

    def __init__(self, transport: str, queue_size: int, control_size: int = 128) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.state = ConnectionState.CONNECTING
        self.queue = OutboundQueue(queue_size, control_size)
        self.last_seen = time.monotonic()
        self.writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"Connection({self.transport}:{self.id[:8]} {self.state.value})"

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    def deliver(self, event: SignalEvent) -> int:
        """Queue an event for the client. Silently ignored unless open."""
        if not self.is_open:
            return 0
        return self.queue.put_event(event)

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def idle_for(self) -> float:
        return time.monotonic() - self.last_seen

    def send_control(self, message: Dict[str, Any]) -> bool:
        """Queue a reply. False means the client stopped reading and must be dropped."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return True
        return self.queue.put_control(message)
