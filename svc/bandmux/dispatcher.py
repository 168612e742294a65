from __future__ import annotations
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type
from pydantic import ValidationError
from . import errors
from .connection import Connection, ConnectionState
from .device import DeviceBridge
from .docs import protocol_reference
from .models import GestureType, SignalType, StatusResponse, now_ms, parse_signal
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[Dict[str, Any]]]


def response_envelope(command: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "response", "data": {"command": command, "success": True, **data}, "timestamp": now_ms()}


def error_envelope(command: Optional[str], err: errors.CommandError) -> Dict[str, Any]:
    return {"type": "error", "data": {"command": command, **err.to_data()}, "timestamp": now_ms()}


def _names(signals) -> list:
    return [s.value for s in SignalType if s in set(signals)]


class CommandDispatcher:
    """
    Turns one client message into registry/bridge calls and a reply envelope.

    Never raises for client mistakes: every CommandError becomes an ``error``
    envelope for the originating connection only.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        bridge: DeviceBridge,
        status: Callable[[], StatusResponse],
    ) -> None:
        self.registry = registry
        self.bridge = bridge
        self.status = status
        self._handlers: Dict[str, Handler] = {
            "subscribe": self._subscribe,
            "unsubscribe": self._unsubscribe,
            "get_subscriptions": self._get_subscriptions,
            "enable": self._enable,
            "disable": self._disable,
            "get_status": self._get_status,
            "get_docs": self._get_docs,
            "trigger_gesture": self._trigger_gesture,
        }

    async def handle_raw(self, conn: Connection, raw: str) -> Dict[str, Any]:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            return error_envelope(None, errors.MalformedMessage(f"message is not valid JSON: {e}"))
        return await self.handle(conn, message)

    async def handle(self, conn: Connection, message: Any) -> Dict[str, Any]:
        command = message.get("command") if isinstance(message, dict) else None
        label = command if isinstance(command, str) else None
        try:
            if not isinstance(message, dict):
                raise errors.MalformedMessage("message must be a JSON object")
            if conn.state != ConnectionState.OPEN:
                raise errors.ConnectionNotOpen(f"connection is {conn.state.value}")
            if command is None:
                raise errors.MalformedMessage("missing 'command' field")
            handler = self._handlers.get(command) if isinstance(command, str) else None
            if handler is None:
                raise errors.InvalidCommand(
                    f"unknown command {command!r}; expected one of: {', '.join(self._handlers)}"
                )
            data = await handler(conn, message)
        except errors.CommandError as e:
            logger.debug(f"{conn} {label or '?'} rejected: {e.code}: {e.message}")
            return error_envelope(label, e)
        logger.debug(f"{conn} {command} ok")
        return response_envelope(command, data)

    # argument helpers

    def _signal_arg(
        self, message: Dict[str, Any], field: str, error_cls: Type[errors.CommandError]
    ) -> SignalType:
        for plural in ("signals", "features"):
            if plural in message:
                raise errors.MalformedMessage(
                    f"'{plural}' is not supported; send one command per {field} using '{field}'"
                )
        value = message.get(field)
        if value is None:
            raise errors.MalformedMessage(f"missing '{field}' field")
        if isinstance(value, (list, tuple, dict)):
            raise errors.MalformedMessage(f"'{field}' must be a single name, not {type(value).__name__}")
        signal = parse_signal(value)
        if signal is None:
            raise error_cls(f"unknown {field} {value!r}; expected one of: {', '.join(s.value for s in SignalType)}")
        return signal

    # handlers

    async def _subscribe(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        signal = self._signal_arg(message, "signal", errors.InvalidSignal)
        changes = self.registry.subscribe(conn.id, signal)
        await self.bridge.apply(changes)
        return {"signal": signal.value, "subscriptions": _names(self.registry.subscriptions_of(conn.id))}

    async def _unsubscribe(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        signal = self._signal_arg(message, "signal", errors.InvalidSignal)
        changes = self.registry.unsubscribe(conn.id, signal)
        await self.bridge.apply(changes)
        return {"signal": signal.value, "subscriptions": _names(self.registry.subscriptions_of(conn.id))}

    async def _get_subscriptions(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        return {"subscriptions": _names(self.registry.subscriptions_of(conn.id))}

    async def _enable(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        feature = self._signal_arg(message, "feature", errors.InvalidFeature)
        changes = self.registry.enable(conn.id, feature)
        await self.bridge.apply(changes)
        return {"feature": feature.value, "active_features": _names(self.registry.active_features())}

    async def _disable(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        feature = self._signal_arg(message, "feature", errors.InvalidFeature)
        changes = self.registry.disable(feature)
        await self.bridge.apply(changes)
        return {
            "feature": feature.value,
            "active": self.registry.is_active(feature),
            "subscribers": len(self.registry.subscribers_of(feature)),
            "active_features": _names(self.registry.active_features()),
        }

    async def _get_status(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        return self.status().model_dump(mode="json")

    async def _get_docs(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        return protocol_reference()

    async def _trigger_gesture(self, conn: Connection, message: Dict[str, Any]) -> Dict[str, Any]:
        data = message.get("data")
        if not isinstance(data, dict):
            raise errors.MalformedMessage("trigger_gesture needs a 'data' object, e.g. {\"type\": \"tap\"}")
        try:
            gesture = GestureType(data.get("type"))
        except ValueError:
            raise errors.InvalidGestureType(
                f"unknown gesture type {data.get('type')!r}; expected one of: {', '.join(g.value for g in GestureType)}"
            )
        try:
            event = self.bridge.simulator.trigger_gesture(gesture, data.get("confidence", 1.0))
        except ValidationError:
            raise errors.MalformedMessage("'confidence' must be a number between 0 and 1")
        logger.info(f"{conn} triggered simulated {gesture.value}")
        return {"gesture": event.to_wire()["data"]}
