"""
FastAPI server for the Twilio <-> OpenAI Realtime voice bridge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twilio/voice, /twiml: TwiML for the Twilio voice webhook
- WS /call (and /ws): Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio where available (not on Windows)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict
from xml.sax.saxutils import quoteattr
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
import structlog
import uvicorn

from src.bridge.config import BridgeConfig, ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    errors: int = 0
    commits: int = 0
    responses_requested: int = 0
    suppressed_replies: int = 0
    dropped_frames: int = 0
    mark_rtt_total_ms: float = 0.0
    mark_rtt_calls: int = 0

    def record_call(self, stats: Dict[str, Any]) -> None:
        """Fold one finished call's counters into the totals."""
        self.commits += sum((stats.get("commits") or {}).values())
        self.responses_requested += int(stats.get("responses_requested", 0))
        self.suppressed_replies += int(stats.get("suppressed_replies", 0))
        self.dropped_frames += int(stats.get("dropped_frames", 0))
        rtt = float(stats.get("mark_rtt_ms") or 0.0)
        if rtt > 0:
            self.mark_rtt_total_ms += rtt
            self.mark_rtt_calls += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "errors": self.errors,
            "commits": self.commits,
            "responses_requested": self.responses_requested,
            "suppressed_replies": self.suppressed_replies,
            "dropped_frames": self.dropped_frames,
            "avg_mark_rtt_ms": round(self.mark_rtt_total_ms / self.mark_rtt_calls, 1) if self.mark_rtt_calls else 0.0,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice bridge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Twilio Realtime Voice Bridge",
    description="Bridges Twilio phone calls to the OpenAI Realtime API",
    version="1.0.0",
    lifespan=lifespan,
)


def build_twiml(config: BridgeConfig) -> str:
    """TwiML that streams the inbound track to us and keeps the call open."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(config.ws_url)} track="inbound_track" />
    </Connect>
    <Pause length="{int(config.twiml_pause_seconds)}" />
</Response>"""


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twilio/voice")
@app.get("/twilio/voice")
@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """Twilio voice webhook: connect the call to our media stream endpoint."""
    config = get_config()
    logger.info("Generated TwiML", ws_url=config.ws_url)
    return Response(content=build_twiml(config), media_type="application/xml")


@app.websocket("/call")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One CallBridge per connection; it is torn down when either side goes away.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"
    logger.info("WebSocket connected", call_id=call_id, active_calls=metrics.active_calls)

    # Import here to keep startup light
    from src.bridge.orchestrator import create_bridge

    bridge = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    async def close_transport() -> None:
        if websocket.application_state == WebSocketState.CONNECTED:
            await websocket.close()

    def connected() -> bool:
        return (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        )

    try:
        bridge = await create_bridge(send_message, close_transport=close_transport)

        while connected():
            try:
                message = await websocket.receive_text()
                await bridge.handle_message(message)
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                logger.error("Error handling WebSocket message", call_id=call_id, error=str(e))
                metrics.errors += 1
                # Keep the call up on a single bad message
                continue

    except Exception as e:
        logger.error("WebSocket handler error", call_id=call_id, error=str(e))
        metrics.errors += 1

    finally:
        if bridge:
            try:
                await bridge.stop("websocket_closed")
                metrics.record_call(bridge.stats())
            except Exception as e:
                logger.error("Error stopping bridge", error=str(e))
                metrics.errors += 1

        metrics.active_connections -= 1
        metrics.active_calls -= 1
        logger.info("Call ended", call_id=call_id, active_calls=metrics.active_calls)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
    """Run the server."""
    try:
        config = init_config()
    except ConfigError as e:
        configure_logging("INFO")
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
