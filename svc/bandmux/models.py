from __future__ import annotations
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Type
from pydantic import BaseModel, Field, conint, confloat, conlist


class SignalType(str, Enum):
    """Named categories of band telemetry. Declaration order is the display order."""
    GESTURE = "gesture"
    PRESSURE = "pressure"
    IMU_ACC = "imu_acc"
    IMU_GYRO = "imu_gyro"
    NAVIGATION = "navigation"
    SNC = "snc"
    BATTERY = "battery"
    BUTTON = "button"


class GestureType(str, Enum):
    TAP = "tap"
    DOUBLE_TAP = "double_tap"
    TWIST = "twist"
    DOUBLE_TWIST = "double_twist"


CONNECTION_STATUS = "connection_status"

# Nominal production rate in Hz, None for event driven signals
NOMINAL_RATES: Dict[SignalType, Optional[int]] = {
    SignalType.GESTURE: None,
    SignalType.PRESSURE: None,
    SignalType.IMU_ACC: 100,
    SignalType.IMU_GYRO: 100,
    SignalType.NAVIGATION: None,
    SignalType.SNC: 500,
    SignalType.BATTERY: None,
    SignalType.BUTTON: None,
}

SIGNAL_NAMES = [s.value for s in SignalType]

Percent = conint(ge=0, le=100)
UnitFloat = confloat(ge=0.0, le=1.0)


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_signal(name: Any) -> Optional[SignalType]:
    """Return the SignalType for a wire name, or None if it is not one."""
    if not isinstance(name, str):
        return None
    try:
        return SignalType(name)
    except ValueError:
        return None


# --- payload shapes ------------------------------------------------------

class GesturePayload(BaseModel):
    type: GestureType = Field(description="Detected gesture")
    confidence: UnitFloat = Field(default=1.0, description="Classifier confidence (0-1)")
    timestamp: Optional[int] = None


class PressurePayload(BaseModel):
    value: Percent = Field(description="Raw pressure level (0-100)")
    normalized: UnitFloat = Field(description="Pressure scaled to 0-1")
    timestamp: Optional[int] = None


class ImuPayload(BaseModel):
    timestamp: Optional[int] = None
    values: conlist(float, min_length=3, max_length=3) = Field(description="x, y, z")
    frequency: int = Field(default=100, description="Sampling rate in Hz")


class NavigationPayload(BaseModel):
    delta_x: int = Field(description="Pointer delta on the x axis")
    delta_y: int = Field(description="Pointer delta on the y axis")
    timestamp: Optional[int] = None


class SncPayload(BaseModel):
    values: List[confloat(ge=-1.0, le=1.0)] = Field(description="Muscle activity samples")
    frequency: int = Field(default=500, description="Sampling rate in Hz")
    timestamp: Optional[int] = None


class BatteryPayload(BaseModel):
    level: Percent = Field(description="Charge level (0-100)")
    charging: bool = Field(default=False)
    timestamp: Optional[int] = None


class ButtonPayload(BaseModel):
    state: Literal["pressed", "released"]
    timestamp: Optional[int] = None


class ConnectionStatusPayload(BaseModel):
    status: Literal["connected", "disconnected"]
    message: str = ""


PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    SignalType.GESTURE.value: GesturePayload,
    SignalType.PRESSURE.value: PressurePayload,
    SignalType.IMU_ACC.value: ImuPayload,
    SignalType.IMU_GYRO.value: ImuPayload,
    SignalType.NAVIGATION.value: NavigationPayload,
    SignalType.SNC.value: SncPayload,
    SignalType.BATTERY.value: BatteryPayload,
    SignalType.BUTTON.value: ButtonPayload,
    CONNECTION_STATUS: ConnectionStatusPayload,
}


# --- events --------------------------------------------------------------

def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class SignalEvent:
    """One telemetry occurrence. Shared read-only between all subscribers."""
    type: str
    data: Mapping[str, Any]
    timestamp: int

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.type, "data": _thaw(self.data), "timestamp": self.timestamp}


def make_event(event_type: str, data: Mapping[str, Any], timestamp: Optional[int] = None) -> SignalEvent:
    """
    Validate a payload against its shape and build a frozen event.

    Raises KeyError for an unknown event type and pydantic.ValidationError for
    a payload that does not match.
    """
    model = PAYLOAD_MODELS[event_type]
    body = model.model_validate(dict(data)).model_dump(mode="json")
    ts = timestamp if timestamp is not None else now_ms()
    if "timestamp" in body:
        if body["timestamp"] is None:
            body["timestamp"] = ts
        else:
            ts = body["timestamp"]
    return SignalEvent(type=event_type, data=_freeze(body), timestamp=ts)


def status_event(status: str, message: str) -> SignalEvent:
    return make_event(CONNECTION_STATUS, {"status": status, "message": message})


# --- HTTP models ---------------------------------------------------------

class BatterySnapshot(BaseModel):
    level: Percent
    charging: bool = False
    timestamp: int


class DeviceStatus(BaseModel):
    """Connection state of the band as seen by the bridge."""
    status: Literal["connected", "disconnected"] = Field(description="Band connection state")
    mode: str = Field(description="'sim' (simulated band) or 'real' (serial bridge)")
    message: str = Field(default="", description="Last status message from the bridge")
    battery: Optional[BatterySnapshot] = Field(default=None, description="Last battery reading, if any")


class RouterStats(BaseModel):
    routed: int = 0
    delivered: int = 0
    dropped: int = 0


class StatusResponse(BaseModel):
    device: DeviceStatus
    active_features: List[str] = Field(default_factory=list, description="Features enabled device-wide")
    subscribers: Dict[str, int] = Field(default_factory=dict, description="Subscriber count per signal")
    connections: int = Field(default=0, description="Open client connections")
    router: RouterStats = Field(default_factory=RouterStats)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status (always 'ok' if service is running)")
    mode: str = Field(description="Current operation mode: 'sim' or 'real'")


class SignalInfo(BaseModel):
    name: str
    rate_hz: Optional[int] = Field(default=None, description="Nominal rate, null when event driven")
    conflicts_with: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response format."""
    detail: str = Field(description="Error message describing what went wrong")
