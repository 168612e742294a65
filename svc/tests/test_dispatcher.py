import asyncio
import json

import pytest

from bandmux.connection import ConnectionState
from bandmux.service import MuxService


def run(coro_fn):
    """Run a test body against a started service in a fresh loop."""
    async def wrapper():
        service = MuxService(mode="sim", queue_size=64)
        await service.start()
        try:
            return await coro_fn(service)
        finally:
            await service.stop()
    return asyncio.run(wrapper())


async def send(service, conn, message):
    return await service.dispatcher.handle(conn, message)


class TestParsing:
    def test_invalid_json(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await service.dispatcher.handle_raw(conn, "{not json")

        reply = run(body)
        assert reply["type"] == "error"
        assert reply["data"]["code"] == "malformed_message"

    @pytest.mark.parametrize("message", [[1, 2], "subscribe", 5, None])
    def test_non_object(self, message):
        async def body(service):
            conn = service.connections.open("websocket")
            return await service.dispatcher.handle_raw(conn, json.dumps(message))

        assert run(body)["data"]["code"] == "malformed_message"

    def test_missing_command(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"signal": "gesture"})

        assert run(body)["data"]["code"] == "malformed_message"

    def test_unknown_command(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"command": "calibrate"})

        reply = run(body)
        assert reply["data"]["code"] == "invalid_command"
        assert reply["data"]["command"] == "calibrate"

    def test_array_signals_rejected_and_singles_accepted(self):
        async def body(service):
            conn = service.connections.open("websocket")
            bad = await send(service, conn, {"command": "subscribe", "signals": ["gesture", "pressure"]})
            subs_after_bad = service.registry.subscriptions_of(conn.id)
            first = await send(service, conn, {"command": "subscribe", "signal": "gesture"})
            second = await send(service, conn, {"command": "subscribe", "signal": "pressure"})
            return bad, subs_after_bad, first, second

        bad, subs_after_bad, first, second = run(body)
        assert bad["type"] == "error"
        assert bad["data"]["code"] == "malformed_message"
        assert subs_after_bad == frozenset()
        assert first["type"] == second["type"] == "response"
        assert second["data"]["subscriptions"] == ["gesture", "pressure"]

    def test_list_in_signal_field_rejected(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"command": "subscribe", "signal": ["gesture"]})

        assert run(body)["data"]["code"] == "malformed_message"

    def test_invalid_signal_and_feature(self):
        async def body(service):
            conn = service.connections.open("websocket")
            sig = await send(service, conn, {"command": "subscribe", "signal": "heartbeat"})
            feat = await send(service, conn, {"command": "enable", "feature": "heartbeat"})
            return sig, feat

        sig, feat = run(body)
        assert sig["data"]["code"] == "invalid_signal"
        assert feat["data"]["code"] == "invalid_feature"


class TestCommands:
    def test_get_subscriptions_before_subscribe(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"command": "get_subscriptions"})

        reply = run(body)
        assert reply["type"] == "response"
        assert reply["data"]["subscriptions"] == []

    def test_unsubscribe_not_subscribed_is_success(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"command": "unsubscribe", "signal": "snc"})

        reply = run(body)
        assert reply["type"] == "response"
        assert reply["data"]["subscriptions"] == []

    def test_conflict_does_not_mutate_active_features(self):
        async def body(service):
            a = service.connections.open("websocket")
            b = service.connections.open("websocket")
            await send(service, a, {"command": "subscribe", "signal": "imu_gyro"})
            reply = await send(service, b, {"command": "subscribe", "signal": "navigation"})
            return reply, service.registry.active_features(), service.bridge.enabled_features

        reply, active, enabled = run(body)
        assert reply["data"]["code"] == "conflict"
        assert reply["data"]["conflict_with"] == "imu_gyro"
        assert [s.value for s in active] == ["imu_gyro"]
        assert [s.value for s in enabled] == ["imu_gyro"]

    def test_disable_reports_remaining_subscribers(self):
        async def body(service):
            conn = service.connections.open("websocket")
            await send(service, conn, {"command": "subscribe", "signal": "gesture"})
            return await send(service, conn, {"command": "disable", "feature": "gesture"})

        reply = run(body)
        assert reply["data"]["active"] is True
        assert reply["data"]["subscribers"] == 1

    def test_get_status(self):
        async def body(service):
            conn = service.connections.open("websocket")
            await send(service, conn, {"command": "enable", "feature": "battery"})
            return await send(service, conn, {"command": "get_status"})

        data = run(body)["data"]
        assert data["device"]["status"] == "connected"
        assert data["active_features"] == ["battery"]
        assert data["connections"] == 1

    def test_trigger_gesture_shape(self):
        async def body(service):
            conn = service.connections.open("websocket")
            await send(service, conn, {"command": "subscribe", "signal": "gesture"})
            reply = await send(service, conn, {"command": "trigger_gesture", "data": {"type": "double_tap"}})
            await service.router.flush()
            return reply, conn.queue.drain()

        reply, queued = run(body)
        assert reply["data"]["gesture"]["type"] == "double_tap"
        assert len(queued) == 1
        event = queued[0]
        assert event["type"] == "gesture"
        assert set(event["data"]) == {"type", "confidence", "timestamp"}
        assert event["data"]["confidence"] == 1.0
        assert event["data"]["timestamp"] == event["timestamp"]

    @pytest.mark.parametrize("data", [{"type": "snap"}, {}, {"type": None}])
    def test_trigger_gesture_invalid_type(self, data):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"command": "trigger_gesture", "data": data})

        assert run(body)["data"]["code"] == "invalid_gesture_type"

    def test_trigger_gesture_bad_confidence(self):
        async def body(service):
            conn = service.connections.open("websocket")
            return await send(service, conn, {"command": "trigger_gesture", "data": {"type": "tap", "confidence": 3}})

        assert run(body)["data"]["code"] == "malformed_message"


class TestConnectionState:
    def test_commands_rejected_unless_open(self):
        async def body(service):
            conn = service.connections.register("websocket")
            before_open = await send(service, conn, {"command": "subscribe", "signal": "gesture"})
            service.connections.activate(conn)
            conn.state = ConnectionState.CLOSING
            while_closing = await send(service, conn, {"command": "enable", "feature": "pressure"})
            return before_open, while_closing, service.registry.active_features()

        before_open, while_closing, active = run(body)
        assert before_open["data"]["code"] == "connection_not_open"
        assert while_closing["data"]["code"] == "connection_not_open"
        assert active == []

    def test_close_cleans_up_and_is_idempotent(self):
        async def body(service):
            a = service.connections.open("websocket")
            b = service.connections.open("websocket")
            await send(service, a, {"command": "subscribe", "signal": "pressure"})
            await send(service, a, {"command": "subscribe", "signal": "gesture"})
            await send(service, b, {"command": "subscribe", "signal": "gesture"})
            await service.connections.close(a)
            await service.connections.close(a)
            return a.state, service.status()

        state, status = run(body)
        assert state == ConnectionState.CLOSED
        assert status.active_features == ["gesture"]
        assert status.subscribers["pressure"] == 0
        assert status.connections == 1


class TestStartup:
    def test_client_opened_after_start_sees_no_startup_status(self):
        async def body(service):
            conn = service.connections.open("websocket")
            await service.router.flush()
            return conn.queue.drain(), service.router.stats.routed

        queued, routed = run(body)
        assert queued == []
        # the startup connection_status was routed before the client existed
        assert routed == 1


class TestRpcSessionExpiry:
    def test_idle_session_releases_features(self):
        async def body(service):
            stale = service.connections.open("rpc")
            fresh = service.connections.open("rpc")
            await send(service, stale, {"command": "subscribe", "signal": "imu_acc"})
            await send(service, fresh, {"command": "enable", "feature": "battery"})
            stale.last_seen -= service.session_ttl_s + 1
            closed = await service.expire_sessions()

            ws = service.connections.open("websocket")
            reply = await send(service, ws, {"command": "subscribe", "signal": "navigation"})
            return closed, stale.state, fresh.state, reply, service.status()

        closed, stale_state, fresh_state, reply, status = run(body)
        assert closed == 1
        assert stale_state == ConnectionState.CLOSED
        assert fresh_state == ConnectionState.OPEN
        assert reply["type"] == "response"
        assert status.active_features == ["navigation", "battery"]

    def test_websocket_connections_never_expire(self):
        async def body(service):
            ws = service.connections.open("websocket")
            ws.last_seen -= service.session_ttl_s + 1
            return await service.expire_sessions(), ws.state

        closed, state = run(body)
        assert closed == 0
        assert state == ConnectionState.OPEN
