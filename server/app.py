"""
FastAPI server for the realtime receptionist.

Endpoints:
- GET /: Liveness message
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /incoming-call: TwiML for the Twilio voice webhook
- WS /media-stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict
import logging

from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.receptionist.config import get_config, init_config, ConfigError
from src.receptionist.extraction import ExtractionPipeline
from src.receptionist.relay import RealtimeRelay
from src.receptionist.sessions import SessionRegistry, new_call_id
from src.receptionist.twilio_protocol import twiml_connect_stream

CALL_SID_HEADER = "x-twilio-call-sid"


# Initialize structured logging
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

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    active_calls: int = 0
    rejected_calls: int = 0
    transcripts_processed: int = 0
    extractions_delivered: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "rejected_calls": self.rejected_calls,
            "transcripts_processed": self.transcripts_processed,
            "extractions_delivered": self.extractions_delivered,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting realtime receptionist server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)
        app.state.pipeline = ExtractionPipeline(config)

        logger.info("Server ready", port=config.port, public_host=config.public_host or None)

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...", active_calls=len(app.state.sessions))


# Create FastAPI app
app = FastAPI(
    title="Realtime Receptionist",
    description="Twilio Media Streams to OpenAI Realtime bridge with post-call extraction",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.sessions = SessionRegistry()
app.state.pipeline = None


@app.get("/")
async def root() -> JSONResponse:
    return JSONResponse(content={"message": "Twilio Media Stream Server is running!"})


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(app.state.sessions),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    Greets the caller and connects the call audio to our Media Streams WebSocket.
    """
    config = get_config()
    stream_url = config.media_stream_url(request.headers.get("host", ""))

    logger.info("Incoming call", stream_url=stream_url)

    return Response(
        content=twiml_connect_stream(stream_url, config.greeting),
        media_type="application/xml",
    )


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Runs one relay for the call until Twilio disconnects.
    """
    registry: SessionRegistry = app.state.sessions
    call_id = websocket.headers.get(CALL_SID_HEADER) or new_call_id()

    if call_id in registry:
        logger.warning("Rejecting duplicate media stream", call_id=call_id)
        metrics.rejected_calls += 1
        await websocket.close(code=1008)
        return

    await websocket.accept()

    metrics.total_calls += 1
    metrics.active_calls += 1

    relay = RealtimeRelay(call_id, registry, websocket, app.state.pipeline)

    try:
        outcome = await relay.run()
        metrics.transcripts_processed += 1
        if outcome is not None and outcome.delivered:
            metrics.extractions_delivered += 1
    except Exception as e:
        logger.error("Media stream handler error", call_id=call_id, error=str(e))
        metrics.errors += 1
    finally:
        metrics.active_calls -= 1
        logger.info("Call ended", call_id=call_id, active_calls=metrics.active_calls)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


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
