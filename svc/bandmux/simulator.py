from __future__ import annotations
import asyncio
import logging
import math
import random
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple
from .models import GestureType, SignalEvent, SignalType, make_event, now_ms

if TYPE_CHECKING:
    from .device import DeviceBridge

logger = logging.getLogger(__name__)


class SimulatedSource:
    """
    Hardware free band.

    Always accepts injected events. As the primary source (sim mode) it also
    reports itself connected and, with ``telemetry`` on, produces synthetic
    samples for every enabled feature at roughly its nominal rate.
    """

    kind = "sim"

    def __init__(self, telemetry: bool = False) -> None:
        self.telemetry = telemetry
        self._bridge: Optional["DeviceBridge"] = None
        self._generators: Dict[SignalType, asyncio.Task] = {}
        self._pressure = 0
        self._battery = 100
        self._button_down = False

    def attach(self, bridge: "DeviceBridge") -> None:
        self._bridge = bridge

    async def start(self, bridge: "DeviceBridge") -> None:
        self.attach(bridge)
        bridge.set_connection_state(True, "simulated device")

    async def stop(self) -> None:
        tasks = list(self._generators.values())
        self._generators.clear()
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass

    async def set_feature(self, signal: SignalType, enabled: bool) -> None:
        if not self.telemetry:
            return
        if enabled and signal not in self._generators:
            self._generators[signal] = asyncio.create_task(
                self._generate(signal), name=f"sim-{signal.value}"
            )
        elif not enabled and signal in self._generators:
            self._generators.pop(signal).cancel()

    # injection

    def inject(self, event: SignalEvent) -> None:
        if self._bridge is None:
            raise RuntimeError("simulated source is not attached to a bridge")
        self._bridge.emit(event)

    def trigger_gesture(self, gesture: GestureType, confidence: float = 1.0) -> SignalEvent:
        event = make_event(
            SignalType.GESTURE.value,
            {"type": gesture.value, "confidence": confidence},
        )
        self.inject(event)
        return event

    # synthetic telemetry

    async def _generate(self, signal: SignalType) -> None:
        period, sample = self._samplers()[signal]
        logger.info(f"Simulated {signal.value} telemetry every {period}s")
        while True:
            self.inject(make_event(signal.value, sample()))
            await asyncio.sleep(period)

    def _samplers(self) -> Dict[SignalType, Tuple[float, Callable[[], Dict[str, Any]]]]:
        return {
            SignalType.GESTURE: (3.0, self._gesture),
            SignalType.PRESSURE: (0.1, self._pressure_sample),
            SignalType.IMU_ACC: (0.01, self._imu_acc),
            SignalType.IMU_GYRO: (0.01, self._imu_gyro),
            SignalType.NAVIGATION: (0.02, self._navigation),
            SignalType.SNC: (0.02, self._snc),
            SignalType.BATTERY: (30.0, self._battery_sample),
            SignalType.BUTTON: (5.0, self._button),
        }

    def _gesture(self) -> Dict[str, Any]:
        return {
            "type": random.choice(list(GestureType)).value,
            "confidence": round(random.uniform(0.7, 1.0), 3),
        }

    def _pressure_sample(self) -> Dict[str, Any]:
        self._pressure = max(0, min(100, self._pressure + random.randint(-8, 8)))
        return {"value": self._pressure, "normalized": self._pressure / 100.0}

    def _imu_acc(self) -> Dict[str, Any]:
        noise = [random.gauss(0.0, 0.02) for _ in range(3)]
        return {"values": [noise[0], noise[1], 1.0 + noise[2]], "frequency": 100}

    def _imu_gyro(self) -> Dict[str, Any]:
        return {"values": [random.gauss(0.0, 0.5) for _ in range(3)], "frequency": 100}

    def _navigation(self) -> Dict[str, Any]:
        return {"delta_x": random.randint(-3, 3), "delta_y": random.randint(-3, 3)}

    def _snc(self) -> Dict[str, Any]:
        # 10 samples per packet at 50 packets/s
        t0 = now_ms() / 1000.0
        values = []
        for i in range(10):
            t = t0 + i / 500.0
            v = 0.4 * math.sin(2 * math.pi * 40 * t) + random.gauss(0.0, 0.1)
            values.append(max(-1.0, min(1.0, v)))
        return {"values": values, "frequency": 500}

    def _battery_sample(self) -> Dict[str, Any]:
        self._battery = max(0, self._battery - 1)
        return {"level": self._battery, "charging": False}

    def _button(self) -> Dict[str, Any]:
        self._button_down = not self._button_down
        return {"state": "pressed" if self._button_down else "released"}
