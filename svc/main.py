from __future__ import annotations
from dotenv import load_dotenv
load_dotenv()  # Load .env file before importing bandmux modules

import time
import logging
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from bandmux.config import CORS_ORIGINS, HOST, LOG_LEVEL, PORT
from bandmux.routes import router
from bandmux.rpc import RpcSurface
from bandmux.service import MuxService

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(levelname)s: %(name)s: %(message)s'
)
logging.getLogger("bandmux").setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log HTTP request and response information."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        client_ip = request.client.host if request.client else "unknown"

        # OPTIONS requests are handled by CORS middleware
        if request.method == "OPTIONS":
            logger.debug(f"OPTIONS request: {request.url.path} from {client_ip}")
            return await call_next(request)

        body = None
        if request.method in ("POST", "PATCH", "PUT", "DELETE"):
            body_bytes = await request.body()
            if body_bytes:
                try:
                    body = json.loads(body_bytes)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    body = "<non-json body>"

            # Recreate request with body for downstream handlers
            async def receive():
                return {"type": "http.request", "body": body_bytes}
            request._receive = receive

        logger.info(
            f"Request: {request.method} {request.url.path} | "
            f"IP: {client_ip} | "
            f"Body: {body if body else 'N/A'}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} | "
            f"Status: {response.status_code} | "
            f"Time: {process_time:.3f}s"
        )

        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    service = MuxService()
    app.state.service = service
    app.state.rpc = RpcSurface(service)
    await service.start()
    try:
        yield
    finally:
        await service.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Mudra Band Signal Mux", version="0.1.0", lifespan=lifespan)

    # Request logging middleware (add first so it wraps everything)
    app.add_middleware(LoggingMiddleware)

    # CORS for local web dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id"],
    )

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host=HOST, port=PORT, reload=True)
