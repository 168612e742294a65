import asyncio
import json
import threading
import time

import pytest

from bandmux.device import DeviceBridge
from bandmux.models import SignalType
from bandmux.registry import FeatureChange, SubscriptionRegistry
from bandmux.serial_device import PhysicalDevice, encode_command, parse_frame


def frame(obj):
    return (json.dumps(obj) + "\n").encode("utf-8")


class FakeSerial:
    """Stands in for an open serial.Serial port."""

    def __init__(self):
        self.written = []

    def write(self, payload):
        self.written.append(payload)

    def flush(self):
        pass

    def close(self):
        pass


def test_parse_frame_valid():
    event = parse_frame(frame({"type": "imu_gyro", "data": {"values": [0.1, 0.2, 0.3]}}))
    assert event is not None
    assert event.type == "imu_gyro"
    assert list(event.data["values"]) == [0.1, 0.2, 0.3]
    assert event.data["frequency"] == 100
    assert event.timestamp > 0


def test_parse_frame_keeps_band_timestamp():
    event = parse_frame(frame({"type": "button", "data": {"state": "pressed"}, "timestamp": 123}))
    assert event is not None
    assert event.data["state"] == "pressed"
    assert event.timestamp == 123


def test_parse_frame_connection_status():
    event = parse_frame(frame({"type": "connection_status", "data": {"status": "disconnected", "message": "sleep"}}))
    assert event is not None
    assert event.type == "connection_status"
    assert event.data["message"] == "sleep"


def test_parse_frame_rejects_garbage():
    assert parse_frame(b"") is None
    assert parse_frame(b"\xff\xfe garbage\n") is None
    assert parse_frame(frame([1, 2, 3])) is None
    assert parse_frame(frame({"type": "heartbeat", "data": {}})) is None
    assert parse_frame(frame({"type": "pressure", "data": "high"})) is None
    assert parse_frame(frame({"type": "pressure", "data": {"value": 400, "normalized": 4.0}})) is None
    assert parse_frame(frame({"type": "imu_acc", "data": {"values": [1.0, 2.0]}})) is None


def test_encode_command():
    assert json.loads(encode_command(SignalType.SNC, True)) == {"command": "enable", "feature": "snc"}
    assert encode_command(SignalType.BATTERY, False).endswith(b"\n")
    assert json.loads(encode_command(SignalType.BATTERY, False))["command"] == "disable"


def test_set_feature_offline_is_replayed_on_reconnect():
    device = PhysicalDevice(port="/dev/null-band")
    asyncio.run(device.set_feature(SignalType.PRESSURE, True))
    asyncio.run(device.set_feature(SignalType.IMU_ACC, True))
    asyncio.run(device.set_feature(SignalType.IMU_ACC, False))

    fake = FakeSerial()
    device._ser = fake
    device._replay_features()
    assert [json.loads(p) for p in fake.written] == [{"command": "enable", "feature": "pressure"}]


def test_set_feature_online_writes_command():
    device = PhysicalDevice(port="/dev/null-band")
    fake = FakeSerial()
    device._ser = fake
    asyncio.run(device.set_feature(SignalType.GESTURE, True))
    assert fake.written == [encode_command(SignalType.GESTURE, True)]


def test_backoff_delays_cap_at_last_value():
    class RecordingStop:
        def __init__(self):
            self.waits = []

        def wait(self, timeout):
            self.waits.append(timeout)

    device = PhysicalDevice(port="/dev/null-band")
    device._stop = RecordingStop()
    for attempt in range(7):
        device._wait(attempt)
    assert device._stop.waits == [2, 5, 10, 20, 30, 30, 30]


class SlowDisableSerial(FakeSerial):
    """Disables take longer to write than enables."""

    def write(self, payload):
        if json.loads(payload)["command"] == "disable":
            time.sleep(0.05)
        super().write(payload)


def test_feature_writes_keep_registry_order():
    registry = SubscriptionRegistry()
    device = PhysicalDevice(port="/dev/null-band")
    fake = SlowDisableSerial()
    device._ser = fake
    bridge = DeviceBridge(lambda event: None, "real", device)

    async def body():
        registry.subscribe("a", SignalType.IMU_ACC)
        await bridge.apply([FeatureChange(SignalType.IMU_ACC, True)])
        fake.written.clear()

        # a leaves, then b subscribes before a's disable has reached the band
        leave = asyncio.create_task(bridge.apply(registry.unsubscribe("a", SignalType.IMU_ACC)))
        join = asyncio.create_task(bridge.apply(registry.subscribe("b", SignalType.IMU_ACC)))
        await asyncio.gather(leave, join)

    asyncio.run(body())
    assert [json.loads(p)["command"] for p in fake.written] == ["disable", "enable"]
    assert bridge.enabled_features == [SignalType.IMU_ACC]
    assert registry.is_active(SignalType.IMU_ACC)


class RecordingBridge:
    def __init__(self):
        self.states = []
        self.events = []

    def set_connection_state_threadsafe(self, connected, message):
        self.states.append(connected)

    def emit_threadsafe(self, event):
        self.events.append(event)


def test_reader_requires_bridge():
    device = PhysicalDevice(port="/dev/null-band")
    with pytest.raises(RuntimeError):
        device._reader_loop()


def test_reader_exits_quietly_when_stopped_mid_read():
    device = PhysicalDevice(port="/dev/null-band")
    bridge = RecordingBridge()
    device._bridge = bridge

    class ClosedUnderRead(FakeSerial):
        def __init__(self):
            super().__init__()
            self.reads = 0

        def readline(self):
            self.reads += 1
            if self.reads == 1:
                return frame({"type": "button", "data": {"state": "pressed"}})
            # pyserial fails this way when another thread closed the port
            device._stop.set()
            raise TypeError("'NoneType' object cannot be interpreted as an integer")

    device._open = ClosedUnderRead
    reader = threading.Thread(target=device._reader_loop)
    reader.start()
    reader.join(2.0)

    assert not reader.is_alive()
    assert bridge.states == [True]
    assert [e.type for e in bridge.events] == ["button"]
    assert device._ser is None
