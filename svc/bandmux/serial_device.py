# bandmux/serial_device.py
"""
Physical Mudra Band reached through a serial bridge (USB dongle or companion
firmware) speaking JSON lines.

Framing, one UTF-8 JSON object per line:
  band -> host:  {"type": "imu_acc", "data": {"values": [...], "frequency": 100}}
                 {"type": "connection_status", "data": {"status": "disconnected", "message": "..."}}
  host -> band:  {"command": "enable", "feature": "imu_acc"}

A frame without a timestamp gets the host receive time.
"""
from __future__ import annotations
import asyncio
import json
import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional
import serial  # pip install pyserial
from pydantic import ValidationError

from .errors import DeviceConnectError
from .models import CONNECTION_STATUS, PAYLOAD_MODELS, SignalEvent, SignalType, make_event

if TYPE_CHECKING:
    from .device import DeviceBridge

logger = logging.getLogger(__name__)


def parse_frame(raw: bytes) -> Optional[SignalEvent]:
    """Decode one line from the band. Returns None for anything unusable."""
    line = raw.decode("utf-8", errors="replace").strip()
    if not line:
        return None
    try:
        frame = json.loads(line)
    except json.JSONDecodeError:
        logger.warning(f"Skipping non-JSON frame: {line[:80]!r}")
        return None
    if not isinstance(frame, dict):
        logger.warning(f"Skipping frame that is not an object: {line[:80]!r}")
        return None
    event_type = frame.get("type")
    data = frame.get("data")
    if event_type not in PAYLOAD_MODELS or not isinstance(data, dict):
        logger.warning(f"Skipping frame with unknown type {event_type!r}")
        return None
    stamp = frame.get("timestamp")
    if not isinstance(stamp, int) or isinstance(stamp, bool) or stamp <= 0:
        stamp = None
    try:
        return make_event(event_type, data, stamp)
    except ValidationError as e:
        logger.warning(f"Skipping invalid {event_type} frame: {e.errors()[0]['msg']}")
        return None


def encode_command(signal: SignalType, enabled: bool) -> bytes:
    cmd = {"command": "enable" if enabled else "disable", "feature": signal.value}
    return (json.dumps(cmd) + "\n").encode("utf-8")


class PhysicalDevice:
    """
    Serial reader for a real band.

    The reader runs in a daemon thread and hands everything to the bridge
    thread-safely. A lost port is reported as a disconnect, then reopened
    with back-off; after reopening the wanted feature set is written again so
    clients never need to resubscribe.
    """

    kind = "serial"

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        timeout_s: float = 1.0,
        reconnect_delays: Optional[List[float]] = None,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout_s = timeout_s
        self.reconnect_delays = reconnect_delays or [2, 5, 10, 20, 30]
        self._bridge: Optional["DeviceBridge"] = None
        self._ser: Optional[serial.Serial] = None
        self._features: Dict[SignalType, bool] = {}
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return f"PhysicalDevice({self.port})"

    async def start(self, bridge: "DeviceBridge") -> None:
        self._bridge = bridge
        self._stop.clear()
        self._thread = threading.Thread(target=self._reader_loop, name="band-serial", daemon=True)
        self._thread.start()

    async def stop(self) -> None:
        self._stop.set()
        self._close()
        if self._thread is not None:
            await asyncio.to_thread(self._thread.join, self.timeout_s * 2)
            self._thread = None

    async def set_feature(self, signal: SignalType, enabled: bool) -> None:
        self._features[signal] = enabled
        if self._ser is None:
            logger.info(f"{self} offline, {signal.value} will be applied on reconnect")
            return
        await asyncio.to_thread(self._write, encode_command(signal, enabled))

    # --- low-level helpers -------------------------------------------------

    def _open(self) -> serial.Serial:
        try:
            return serial.Serial(port=self.port, baudrate=self.baudrate, timeout=self.timeout_s)
        except (serial.SerialException, OSError) as e:
            raise DeviceConnectError(f"cannot open {self.port}: {e}") from e

    def _close(self) -> None:
        ser, self._ser = self._ser, None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"{self} close failed: {e}")

    def _write(self, payload: bytes) -> None:
        with self._write_lock:
            ser = self._ser
            if ser is None:
                return
            ser.write(payload)
            ser.flush()

    def _replay_features(self) -> None:
        for signal, enabled in list(self._features.items()):
            if enabled:
                self._write(encode_command(signal, True))

    def _wait(self, attempt: int) -> None:
        delay = self.reconnect_delays[min(attempt, len(self.reconnect_delays) - 1)]
        logger.info(f"{self} reconnect attempt in {delay}s (attempt {attempt + 1})")
        self._stop.wait(delay)

    # --- reader thread -----------------------------------------------------

    def _reader_loop(self) -> None:
        bridge = self._bridge
        if bridge is None:
            raise RuntimeError(f"{self} reader started without a bridge")
        attempt = 0
        while not self._stop.is_set():
            try:
                self._ser = self._open()
            except DeviceConnectError as e:
                logger.warning(str(e))
                bridge.set_connection_state_threadsafe(False, str(e))
                self._wait(attempt)
                attempt += 1
                continue

            attempt = 0
            logger.info(f"{self} opened at {self.baudrate} baud")
            bridge.set_connection_state_threadsafe(True, f"connected on {self.port}")
            reason = "serial link closed"
            try:
                self._replay_features()
                while not self._stop.is_set():
                    ser = self._ser
                    if ser is None:
                        break
                    raw = ser.readline()
                    if not raw:
                        continue
                    event = parse_frame(raw)
                    if event is None:
                        continue
                    if event.type == CONNECTION_STATUS:
                        bridge.set_connection_state_threadsafe(
                            event.data["status"] == "connected", event.data["message"]
                        )
                    else:
                        bridge.emit_threadsafe(event)
            except Exception as e:
                if self._stop.is_set():
                    # stop() closed the port under a blocking read
                    logger.debug(f"{self} reader stopped: {e!r}")
                elif isinstance(e, (serial.SerialException, OSError)):
                    reason = f"serial link lost: {e}"
                    logger.warning(f"{self} {reason}")
                else:
                    raise
            finally:
                self._close()

            if self._stop.is_set():
                break
            bridge.set_connection_state_threadsafe(False, reason)
            self._wait(attempt)
            attempt += 1
