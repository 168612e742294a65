from __future__ import annotations
from dataclasses import dataclass
from typing import AbstractSet, Dict, FrozenSet, List, Union
from .models import SignalType

# Navigation and raw IMU streaming share the band's inertial sensor
_EXCLUSIONS: Dict[SignalType, FrozenSet[SignalType]] = {
    SignalType.NAVIGATION: frozenset({SignalType.IMU_ACC, SignalType.IMU_GYRO}),
    SignalType.IMU_ACC: frozenset({SignalType.NAVIGATION}),
    SignalType.IMU_GYRO: frozenset({SignalType.NAVIGATION}),
}


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class Conflict:
    with_signal: SignalType
    reason: str


Verdict = Union[Allowed, Conflict]


def conflicts_of(signal: SignalType) -> List[SignalType]:
    """Signals that can never be active together with ``signal``."""
    blocked = _EXCLUSIONS.get(signal, frozenset())
    return [s for s in SignalType if s in blocked]


def can_enable(signal: SignalType, currently_active: AbstractSet[SignalType]) -> Verdict:
    """
    Decide whether ``signal`` may be enabled given the device-wide active set.

    ``currently_active`` must be the union over all connections. A signal that
    is already active is always allowed. When several active signals block
    the request the first one in declaration order is reported.
    """
    if signal in currently_active:
        return Allowed()
    for other in conflicts_of(signal):
        if other in currently_active:
            return Conflict(
                with_signal=other,
                reason=(
                    f"{signal.value} cannot be enabled while {other.value} is active; "
                    f"disable {other.value} first"
                ),
            )
    return Allowed()
