from __future__ import annotations
import asyncio
import logging
from typing import Callable, List, Optional, Protocol, Set
from .models import (
    BatterySnapshot,
    DeviceStatus,
    SignalEvent,
    SignalType,
    status_event,
)
from .registry import FeatureChange
from .simulator import SimulatedSource

logger = logging.getLogger(__name__)


class DeviceSource(Protocol):
    """
    What every band origin implements. One instance represents one band.
    """

    kind: str

    async def start(self, bridge: "DeviceBridge") -> None:
        ...

    async def stop(self) -> None:
        ...

    async def set_feature(self, signal: SignalType, enabled: bool) -> None:
        ...


class DeviceBridge:
    """
    Front for the band, whichever origin it is.

    Owns the device status and battery snapshot and feeds every event, real or
    injected, into one channel (the router input). The simulated injection
    path is always present, so gestures can be triggered with no hardware.
    """

    def __init__(
        self,
        publish: Callable[[SignalEvent], None],
        mode: str,
        source: DeviceSource,
        simulator: Optional[SimulatedSource] = None,
    ) -> None:
        self._publish = publish
        self.mode = mode
        self.source = source
        if simulator is None:
            simulator = source if isinstance(source, SimulatedSource) else SimulatedSource()
        self.simulator = simulator
        self.simulator.attach(self)
        self._connected = False
        self._message = "not started"
        self._battery: Optional[BatterySnapshot] = None
        self._enabled: Set[SignalType] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._apply_lock = asyncio.Lock()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        logger.info(f"Starting device bridge in {self.mode} mode ({self.source.kind})")
        await self.source.start(self)

    async def stop(self) -> None:
        await self.source.stop()
        if self.simulator is not self.source:
            await self.simulator.stop()

    # events in

    def emit(self, event: SignalEvent) -> None:
        """Feed one event into the router input. Must run on the event loop."""
        if event.type == SignalType.BATTERY.value:
            self._battery = BatterySnapshot(
                level=event.data["level"],
                charging=event.data["charging"],
                timestamp=event.timestamp,
            )
        self._publish(event)

    def emit_threadsafe(self, event: SignalEvent) -> None:
        if self._loop is None:
            raise RuntimeError("device bridge not started")
        self._loop.call_soon_threadsafe(self.emit, event)

    def inject(self, event: SignalEvent) -> None:
        """Simulated path: downstream it looks exactly like a device event."""
        self.simulator.inject(event)

    # status

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connection_state(self, connected: bool, message: str) -> None:
        """Record a connect/disconnect transition and broadcast it to every client."""
        self._message = message
        if connected == self._connected:
            return
        self._connected = connected
        if connected:
            logger.info(f"Band connected: {message}")
        else:
            logger.warning(f"Band disconnected: {message}")
        self._publish(status_event("connected" if connected else "disconnected", message))

    def set_connection_state_threadsafe(self, connected: bool, message: str) -> None:
        if self._loop is None:
            raise RuntimeError("device bridge not started")
        self._loop.call_soon_threadsafe(self.set_connection_state, connected, message)

    def status(self) -> DeviceStatus:
        return DeviceStatus(
            status="connected" if self._connected else "disconnected",
            mode=self.mode,
            message=self._message,
            battery=self._battery,
        )

    # features out

    @property
    def enabled_features(self) -> List[SignalType]:
        return [s for s in SignalType if s in self._enabled]

    async def apply(self, changes: List[FeatureChange]) -> None:
        """
        Push registry feature transitions to the band.

        Calls are serialized, so the band sees transitions in the order the
        registry produced them.
        """
        if not changes:
            return
        async with self._apply_lock:
            for change in changes:
                if change.enabled:
                    self._enabled.add(change.signal)
                else:
                    self._enabled.discard(change.signal)
                try:
                    await self.source.set_feature(change.signal, change.enabled)
                except Exception as e:
                    # the source replays its feature set on reconnect
                    logger.error(f"Failed to {'enable' if change.enabled else 'disable'} {change.signal.value}: {e}")
