"""Static protocol reference returned by ``get_docs`` and ``GET /protocol``."""
from __future__ import annotations
from typing import Any, Dict
from .compatibility import conflicts_of
from .models import NOMINAL_RATES, SignalType

PAYLOADS: Dict[str, Dict[str, str]] = {
    "gesture": {
        "type": "tap | double_tap | twist | double_twist",
        "confidence": "float 0..1",
        "timestamp": "int ms",
    },
    "pressure": {"value": "int 0..100", "normalized": "float 0..1", "timestamp": "int ms"},
    "imu_acc": {"timestamp": "int ms", "values": "[x, y, z] float", "frequency": "int Hz"},
    "imu_gyro": {"timestamp": "int ms", "values": "[x, y, z] float", "frequency": "int Hz"},
    "navigation": {"delta_x": "int", "delta_y": "int", "timestamp": "int ms"},
    "snc": {"values": "[float -1..1, ...]", "frequency": "int Hz", "timestamp": "int ms"},
    "battery": {"level": "int 0..100", "charging": "bool", "timestamp": "int ms"},
    "button": {"state": "pressed | released", "timestamp": "int ms"},
    "connection_status": {"status": "connected | disconnected", "message": "string"},
}

COMMANDS: Dict[str, Dict[str, str]] = {
    "subscribe": {
        "example": '{"command": "subscribe", "signal": "gesture"}',
        "description": "Receive events of one signal; enables the feature for its first subscriber.",
    },
    "unsubscribe": {
        "example": '{"command": "unsubscribe", "signal": "gesture"}',
        "description": "Stop receiving a signal; the feature is disabled when no subscriber is left.",
    },
    "get_subscriptions": {
        "example": '{"command": "get_subscriptions"}',
        "description": "List the signals this connection is subscribed to.",
    },
    "enable": {
        "example": '{"command": "enable", "feature": "pressure"}',
        "description": "Enable a device feature without subscribing to it.",
    },
    "disable": {
        "example": '{"command": "disable", "feature": "pressure"}',
        "description": "Disable a device feature; it stays on while it still has subscribers.",
    },
    "get_status": {
        "example": '{"command": "get_status"}',
        "description": "Band connection state, battery, active features and subscriber counts.",
    },
    "get_docs": {
        "example": '{"command": "get_docs"}',
        "description": "This reference.",
    },
    "trigger_gesture": {
        "example": '{"command": "trigger_gesture", "data": {"type": "tap"}}',
        "description": "Inject a simulated gesture; delivered exactly like a device gesture.",
    },
}

ERRORS: Dict[str, str] = {
    "invalid_command": "Unknown value in the 'command' field.",
    "malformed_message": "Not a JSON object, missing fields, or array-valued 'signals'.",
    "invalid_signal": "Unknown signal name.",
    "invalid_feature": "Unknown feature name.",
    "invalid_gesture_type": "trigger_gesture with an unknown gesture type.",
    "conflict": "The signal cannot be active together with 'conflict_with'.",
    "connection_not_open": "Command sent on a connection that is closing.",
}


def protocol_reference() -> Dict[str, Any]:
    return {
        "envelope": {"type": "<signal | connection_status | response | error>", "data": "{...}", "timestamp": "int ms"},
        "signals": {
            s.value: {
                "rate_hz": NOMINAL_RATES[s],
                "payload": PAYLOADS[s.value],
                "conflicts_with": [c.value for c in conflicts_of(s)],
            }
            for s in SignalType
        },
        "connection_status": PAYLOADS["connection_status"],
        "commands": COMMANDS,
        "errors": ERRORS,
        "rules": [
            "One signal per command; array-valued 'signals' is rejected.",
            "navigation cannot be active together with imu_acc or imu_gyro, across all clients.",
            "gesture, pressure, snc, battery and button combine freely.",
        ],
    }
