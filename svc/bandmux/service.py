from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Optional
from . import errors
from .config import (
    BAND_BAUDRATE,
    BAND_READ_TIMEOUT_S,
    BAND_SERIAL_PORT,
    CONTROL_QUEUE_SIZE,
    MODE,
    OUTBOUND_QUEUE_SIZE,
    RECONNECT_DELAYS,
    RPC_SESSION_TTL_S,
    RPC_SWEEP_INTERVAL_S,
    SIM_TELEMETRY,
)
from .connection import Connection
from .device import DeviceBridge, DeviceSource
from .dispatcher import CommandDispatcher, error_envelope
from .manager import SHARED_TRANSPORT, ConnectionManager
from .models import SignalEvent, StatusResponse
from .registry import SubscriptionRegistry
from .router import SignalRouter
from .serial_device import PhysicalDevice
from .simulator import SimulatedSource

logger = logging.getLogger(__name__)

# Commands that only make sense on a connection that receives events
SESSION_COMMANDS = ("subscribe", "unsubscribe", "get_subscriptions")


def make_source(mode: str) -> DeviceSource:
    if mode == "real":
        return PhysicalDevice(
            port=BAND_SERIAL_PORT,
            baudrate=BAND_BAUDRATE,
            timeout_s=BAND_READ_TIMEOUT_S,
            reconnect_delays=RECONNECT_DELAYS,
        )
    return SimulatedSource(telemetry=SIM_TELEMETRY)


class MuxService:
    """
    Wires registry, bridge, router and connections together. One per app.

    Request/response surfaces without a session (HTTP, sessionless RPC calls)
    share one long-lived connection, so features they enable stay enabled
    until someone disables them.
    """

    def __init__(
        self,
        mode: str = MODE,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
        source: Optional[DeviceSource] = None,
        session_ttl_s: float = RPC_SESSION_TTL_S,
        sweep_interval_s: float = RPC_SWEEP_INTERVAL_S,
    ) -> None:
        self.mode = mode
        self.session_ttl_s = session_ttl_s
        self.sweep_interval_s = sweep_interval_s
        self.registry = SubscriptionRegistry()
        self.bridge = DeviceBridge(self._publish, mode, source or make_source(mode))
        self.connections = ConnectionManager(self.registry, self.bridge, queue_size, CONTROL_QUEUE_SIZE)
        self.router = SignalRouter(self.registry, self.connections)
        self.dispatcher = CommandDispatcher(self.registry, self.bridge, self.status)
        self.shared: Optional[Connection] = None
        self._sweeper: Optional[asyncio.Task] = None

    def _publish(self, event: SignalEvent) -> None:
        self.router.publish(event)

    async def start(self) -> None:
        self.router.start()
        await self.bridge.start()
        # route the startup status before any client can be registered
        await self.router.flush()
        self.shared = self.connections.open(SHARED_TRANSPORT)
        self._sweeper = asyncio.create_task(self._sweep_sessions(), name="rpc-session-sweeper")
        logger.info(f"Mux service started in {self.mode} mode")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.connections.close_all()
        self.shared = None
        await self.bridge.stop()
        await self.router.stop()
        logger.info("Mux service stopped")

    async def _sweep_sessions(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                await self.expire_sessions()
            except Exception:
                logger.exception("RPC session sweep failed")

    async def expire_sessions(self) -> int:
        """Close RPC sessions whose client stopped calling. Returns how many were closed."""
        return len(await self.connections.close_idle("rpc", self.session_ttl_s))

    async def run_shared(self, message: Any) -> Dict[str, Any]:
        """Run one command on the shared connection and return its reply envelope."""
        command = message.get("command") if isinstance(message, dict) else None
        if command in SESSION_COMMANDS:
            return error_envelope(command, errors.InvalidCommand(
                f"{command} needs a session; use the WebSocket or an RPC session"
            ))
        if self.shared is None:
            return error_envelope(command, errors.ConnectionNotOpen("service is not running"))
        return await self.dispatcher.handle(self.shared, message)

    def status(self) -> StatusResponse:
        return StatusResponse(
            device=self.bridge.status(),
            active_features=[s.value for s in self.registry.active_features()],
            subscribers=self.registry.subscriber_counts(),
            connections=self.connections.count(),
            router=self.router.stats.model_copy(),
        )
