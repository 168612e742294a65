from __future__ import annotations
import asyncio
import json
import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional
from starlette.websockets import WebSocket, WebSocketDisconnect
from .connection import Connection, ConnectionState, QueueClosed
from .device import DeviceBridge
from .registry import SubscriptionRegistry

if TYPE_CHECKING:
    from .dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)

# Transport of the service-wide connection used by sessionless surfaces
SHARED_TRANSPORT = "shared"


class ConnectionManager:
    """
    Owns every client session: registration, the outbound writer task, and
    cleanup (subscriptions removed, orphaned features switched off).
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        bridge: DeviceBridge,
        queue_size: int,
        control_size: int = 128,
    ) -> None:
        self.registry = registry
        self.bridge = bridge
        self.queue_size = queue_size
        self.control_size = control_size
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    # lookup

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def open_connections(self) -> List[Connection]:
        """Open client sessions. The shared connection is not a client and gets no events."""
        with self._lock:
            return [
                c for c in self._connections.values()
                if c.is_open and c.transport != SHARED_TRANSPORT
            ]

    def count(self) -> int:
        return len(self.open_connections())

    # lifecycle

    def register(self, transport: str) -> Connection:
        conn = Connection(transport, self.queue_size, self.control_size)
        with self._lock:
            self._connections[conn.id] = conn
        return conn

    def activate(self, conn: Connection) -> None:
        if conn.state == ConnectionState.CONNECTING:
            conn.state = ConnectionState.OPEN
            logger.info(f"{conn} opened")

    def open(self, transport: str) -> Connection:
        conn = self.register(transport)
        self.activate(conn)
        return conn

    async def close(self, conn: Connection) -> None:
        """Tear a connection down. Safe to call twice and while events are in flight."""
        if conn.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        conn.state = ConnectionState.CLOSING
        conn.queue.close()
        # registry cleanup runs before the first await so a cancelled caller still completes it
        changes = self.registry.remove_connection(conn.id)
        with self._lock:
            self._connections.pop(conn.id, None)
        writer, conn.writer = conn.writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        conn.state = ConnectionState.CLOSED
        logger.info(f"{conn} closed")
        await self.bridge.apply(changes)

    async def close_all(self) -> None:
        with self._lock:
            conns = list(self._connections.values())
        for conn in conns:
            await self.close(conn)

    async def close_idle(self, transport: str, ttl_s: float) -> List[Connection]:
        """Close open connections of ``transport`` that have been idle longer than ``ttl_s``."""
        with self._lock:
            stale = [
                c for c in self._connections.values()
                if c.transport == transport and c.is_open and c.idle_for() > ttl_s
            ]
        for conn in stale:
            logger.info(f"{conn} idle for {conn.idle_for():.0f}s, closing")
            await self.close(conn)
        return stale

    # websocket transport

    async def serve_websocket(self, websocket: WebSocket, dispatcher: "CommandDispatcher") -> None:
        """Inbound loop for one WebSocket client; the writer runs as its own task."""
        conn = self.register("websocket")
        try:
            await websocket.accept()
            self.activate(conn)
            conn.writer = asyncio.create_task(self._write_loop(conn, websocket), name=f"ws-writer-{conn.id[:8]}")
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                reply = await dispatcher.handle_raw(conn, raw)
                if not conn.send_control(reply):
                    logger.warning(f"{conn} has {self.control_size} unread replies, disconnecting")
                    await self.close(conn)
                    await websocket.close(code=1008)
                    break
        except WebSocketDisconnect:
            pass
        finally:
            await self.close(conn)

    async def _write_loop(self, conn: Connection, websocket: WebSocket) -> None:
        try:
            while True:
                message = await conn.queue.get()
                await websocket.send_text(json.dumps(message))
        except QueueClosed:
            pass
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            # client vanished mid-send; whatever was queued is discarded
            logger.debug(f"{conn} writer stopped: {e}")
