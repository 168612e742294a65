"""
JSON-RPC 2.0 tool surface (MCP style) over HTTP POST.

Methods:
  initialize    opens an rpc session, result carries ``sessionId``
  tools/list    one tool per command plus ``poll_events``
  tools/call    runs a tool for the session named by the Mcp-Session-Id header
  ping          empty result

Tool calls without a session run on the service-wide shared connection;
subscribe, unsubscribe, get_subscriptions and poll_events need a session.
Every request naming a session refreshes it; sessions idle longer than
``RPC_SESSION_TTL_S`` are closed by the service and release their features.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from .connection import Connection
from .models import GestureType, SIGNAL_NAMES
from .service import MuxService

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "bandmux"
SERVER_VERSION = "0.1.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
UNKNOWN_SESSION = -32001

_SIGNAL_ARG = {"type": "string", "enum": SIGNAL_NAMES}
_NO_ARGS: Dict[str, Any] = {"type": "object", "properties": {}}

TOOLS: List[Dict[str, Any]] = [
    {
        "name": "subscribe",
        "description": "Subscribe this session to one signal. Events are collected with poll_events.",
        "inputSchema": {"type": "object", "properties": {"signal": _SIGNAL_ARG}, "required": ["signal"]},
    },
    {
        "name": "unsubscribe",
        "description": "Unsubscribe this session from one signal.",
        "inputSchema": {"type": "object", "properties": {"signal": _SIGNAL_ARG}, "required": ["signal"]},
    },
    {
        "name": "get_subscriptions",
        "description": "List the signals this session is subscribed to.",
        "inputSchema": _NO_ARGS,
    },
    {
        "name": "enable",
        "description": "Enable a band feature device-wide.",
        "inputSchema": {"type": "object", "properties": {"feature": _SIGNAL_ARG}, "required": ["feature"]},
    },
    {
        "name": "disable",
        "description": "Disable a band feature; it stays on while it has subscribers.",
        "inputSchema": {"type": "object", "properties": {"feature": _SIGNAL_ARG}, "required": ["feature"]},
    },
    {
        "name": "get_status",
        "description": "Band connection state, battery, active features and subscriber counts.",
        "inputSchema": _NO_ARGS,
    },
    {
        "name": "get_docs",
        "description": "Protocol reference: signals, payloads, commands, errors.",
        "inputSchema": _NO_ARGS,
    },
    {
        "name": "trigger_gesture",
        "description": "Inject a simulated gesture, delivered like a real one.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": [g.value for g in GestureType]},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": ["type"],
        },
    },
    {
        "name": "poll_events",
        "description": "Drain events queued for this session since the last poll.",
        "inputSchema": {
            "type": "object",
            "properties": {"limit": {"type": "integer", "minimum": 1}},
        },
    },
]

_TOOL_NAMES = {t["name"] for t in TOOLS}


def _result(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def _error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def _content(payload: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {"content": [{"type": "text", "text": json.dumps(payload)}]}
    if is_error:
        out["isError"] = True
    return out


class RpcSurface:
    def __init__(self, service: MuxService) -> None:
        self.service = service

    def _session(self, session_id: Optional[str]) -> Optional[Connection]:
        if not session_id:
            return None
        conn = self.service.connections.get(session_id)
        if conn is None or conn.transport != "rpc":
            return None
        return conn

    async def handle_body(self, raw: bytes, session_id: Optional[str]) -> Tuple[Any, Optional[str]]:
        """Handle one HTTP body. Returns (response or None, session id to report)."""
        session = self._session(session_id)
        if session is not None:
            session.touch()
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return _error(None, PARSE_ERROR, f"Parse error: {e}"), session_id
        if isinstance(body, list):
            responses = []
            for request in body:
                response, session_id = await self.handle_request(request, session_id)
                if response is not None:
                    responses.append(response)
            return (responses or None), session_id
        return await self.handle_request(body, session_id)

    async def handle_request(self, request: Any, session_id: Optional[str]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            return _error(None, INVALID_REQUEST, "Invalid request"), session_id
        method = request["method"]
        req_id = request.get("id")
        params = request.get("params")
        if not isinstance(params, dict):
            params = {}

        # Notifications (no id) get no response
        if req_id is None and method.startswith("notifications/"):
            logger.debug(f"Notification: {method}")
            return None, session_id

        if method == "initialize":
            conn = self.service.connections.open("rpc")
            logger.info(f"RPC session {conn.id} initialized, protocol={params.get('protocolVersion', 'unknown')}")
            return _result(req_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                "sessionId": conn.id,
            }), conn.id
        if method == "tools/list":
            return _result(req_id, {"tools": TOOLS}), session_id
        if method == "tools/call":
            return await self._tools_call(req_id, params, session_id), session_id
        if method == "ping":
            return _result(req_id, {}), session_id
        return _error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}"), session_id

    async def _tools_call(self, req_id: Any, params: Dict[str, Any], session_id: Optional[str]) -> Dict[str, Any]:
        name = params.get("name", "")
        arguments = params.get("arguments") or {}
        if name not in _TOOL_NAMES:
            return _error(req_id, INVALID_PARAMS, f"Unknown tool: {name}")
        if not isinstance(arguments, dict):
            return _error(req_id, INVALID_PARAMS, "arguments must be an object")

        conn = self._session(session_id)
        if session_id and conn is None:
            return _error(req_id, UNKNOWN_SESSION, f"Unknown session: {session_id}")

        if name == "poll_events":
            if conn is None:
                return _error(req_id, UNKNOWN_SESSION, "poll_events needs a session; call initialize first")
            limit = arguments.get("limit")
            events = conn.queue.drain(limit if isinstance(limit, int) and limit > 0 else None)
            return _result(req_id, _content({"events": events, "dropped": conn.queue.dropped}))

        message: Dict[str, Any] = {**arguments, "command": name}
        if name == "trigger_gesture" and "data" not in arguments:
            message = {"command": name, "data": arguments}

        if conn is None:
            envelope = await self.service.run_shared(message)
        else:
            envelope = await self.service.dispatcher.handle(conn, message)
        return _result(req_id, _content(envelope["data"], is_error=envelope["type"] == "error"))

    async def close_session(self, session_id: Optional[str]) -> bool:
        conn = self._session(session_id)
        if conn is None:
            return False
        await self.service.connections.close(conn)
        logger.info(f"RPC session {session_id} closed")
        return True
