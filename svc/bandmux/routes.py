from __future__ import annotations
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, Response, WebSocket, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import HTTPConnection
from .compatibility import conflicts_of
from .models import (
    NOMINAL_RATES,
    ErrorResponse,
    HealthResponse,
    SignalInfo,
    SignalType,
    StatusResponse,
    make_event,
    parse_signal,
)
from .docs import protocol_reference
from .rpc import RpcSurface
from .service import MuxService

router = APIRouter()

# HTTP status per command error code on the one-shot command surface
_ERROR_STATUS = {
    "conflict": status.HTTP_409_CONFLICT,
    "connection_not_open": status.HTTP_409_CONFLICT,
}


def get_service(conn: HTTPConnection) -> MuxService:
    return conn.app.state.service


def get_rpc(conn: HTTPConnection) -> RpcSurface:
    return conn.app.state.rpc


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns service health status and current operation mode (sim or real)",
    tags=["Health"]
)
def health(service: MuxService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", mode=service.mode)


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Device and subscription status",
    description="Band connection state, battery snapshot, active features and subscriber counts",
    tags=["Status"]
)
async def get_status(service: MuxService = Depends(get_service)) -> StatusResponse:
    return service.status()


@router.get(
    "/protocol",
    summary="Protocol reference",
    description="Signals, payload shapes, commands and error codes of the WebSocket protocol",
    tags=["Status"]
)
def get_protocol() -> Dict[str, Any]:
    return protocol_reference()


@router.get(
    "/signals",
    response_model=List[SignalInfo],
    summary="List signal types",
    tags=["Status"]
)
def list_signals() -> List[SignalInfo]:
    return [
        SignalInfo(
            name=s.value,
            rate_hz=NOMINAL_RATES[s],
            conflicts_with=[c.value for c in conflicts_of(s)],
        )
        for s in SignalType
    ]


@router.post(
    "/simulate/{signal}",
    summary="Inject a simulated event",
    description="Feed one event of any signal type into the router as if the band produced it.",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown signal type"},
        422: {"model": ErrorResponse, "description": "Payload does not match the signal's shape"},
    },
    tags=["Simulation"]
)
async def simulate(
    signal: str,
    body: Optional[Dict[str, Any]] = Body(default=None),
    service: MuxService = Depends(get_service),
) -> Dict[str, Any]:
    parsed = parse_signal(signal)
    if parsed is None:
        raise HTTPException(status_code=404, detail=f"unknown signal {signal!r}")
    try:
        event = make_event(parsed.value, body or {})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"invalid {signal} payload: {e.errors()[0]['msg']}")
    service.bridge.inject(event)
    return {"ok": True, "event": event.to_wire()}


@router.post(
    "/commands",
    summary="Run one command",
    description=(
        "Executes one protocol command and returns its reply envelope. "
        "subscribe, unsubscribe and get_subscriptions need a session (WebSocket or RPC)."
    ),
    tags=["Commands"]
)
async def run_command(
    body: Any = Body(...),
    service: MuxService = Depends(get_service),
) -> JSONResponse:
    envelope = await service.run_shared(body)
    if envelope["type"] == "error":
        code = _ERROR_STATUS.get(envelope["data"]["code"], status.HTTP_400_BAD_REQUEST)
        return JSONResponse(status_code=code, content=envelope)
    return JSONResponse(content=envelope)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, service: MuxService = Depends(get_service)) -> None:
    await service.connections.serve_websocket(websocket, service.dispatcher)


@router.post("/rpc", summary="JSON-RPC tool surface", tags=["RPC"])
async def rpc_post(
    request: Request,
    rpc: RpcSurface = Depends(get_rpc),
    session_id: Optional[str] = Header(default=None, alias="Mcp-Session-Id"),
) -> Response:
    payload, session_id = await rpc.handle_body(await request.body(), session_id)
    headers = {"Mcp-Session-Id": session_id} if session_id else None
    if payload is None:
        return Response(status_code=status.HTTP_202_ACCEPTED, headers=headers)
    return JSONResponse(content=payload, headers=headers)


@router.delete("/rpc", summary="Close a JSON-RPC session", tags=["RPC"])
async def rpc_delete(
    rpc: RpcSurface = Depends(get_rpc),
    session_id: Optional[str] = Header(default=None, alias="Mcp-Session-Id"),
) -> Dict[str, bool]:
    if not await rpc.close_session(session_id):
        raise HTTPException(status_code=404, detail="unknown session")
    return {"ok": True}
