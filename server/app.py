"""
FastAPI server for the Twilio voice bot.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml: TwiML that connects the call to the media WebSocket
- POST /call: Start an outbound call
- WS /stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import html
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from src.voicebot.config import ConfigError, get_config, init_config
from src.voicebot.errors import StreamError


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
    outbound_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "outbound_calls": self.outbound_calls,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


class CallRequest(BaseModel):
    to: str = ""


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the telephony connection the session uses."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive_text(self) -> str:
        try:
            return await self._websocket.receive_text()
        except WebSocketDisconnect as e:
            raise StreamError(f"Twilio disconnected (code {e.code})") from e
        except RuntimeError as e:
            # Starlette refuses to receive once the socket is closed.
            raise StreamError(f"Twilio connection unusable: {e}") from e

    async def send_text(self, message: str) -> None:
        if self._closed:
            raise StreamError("Twilio connection already closed")
        await self._websocket.send_text(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close()
        except RuntimeError as e:
            logger.debug("WebSocket already closed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Twilio voice bot server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        logger.info(
            "Server ready",
            port=config.port,
            base_url=config.base_url,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Twilio Voice Bot",
    description="Real-time voice bot for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


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


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio webhook.

    Twilio sends CallSid as a query parameter (GET) or form field (POST).
    """
    call_sid = request.query_params.get("CallSid", "")
    if not call_sid and request.method == "POST":
        form = await request.form()
        call_sid = str(form.get("CallSid") or "")

    if not call_sid:
        return JSONResponse(status_code=400, content={"error": "CallSid missing"})

    config = get_config()
    stream_url = f"{config.ws_url}stream?CallSid={call_sid}"

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{html.escape(stream_url, quote=True)}" bidirectional="true" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", call_sid=call_sid, stream_url=stream_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/call")
async def create_call(body: CallRequest) -> JSONResponse:
    """Start an outbound call whose TwiML points back at /twiml."""
    if not body.to:
        return JSONResponse(status_code=400, content={"error": "`to` field is required"})

    config = get_config()
    if not config.twilio_from_number:
        return JSONResponse(status_code=503, content={"error": "TWILIO_FROM_NUMBER is not configured"})

    client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
    try:
        # The Twilio SDK is blocking.
        call = await asyncio.to_thread(
            client.calls.create,
            to=body.to,
            from_=config.twilio_from_number,
            url=f"{config.base_url}twiml",
            method="GET",
        )
    except TwilioException as e:
        logger.error("Twilio call creation failed", to=body.to, error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"error": "failed to create call"})

    metrics.outbound_calls += 1
    logger.info("Outbound call initiated", to=body.to, call_sid=call.sid)
    return JSONResponse(content={"sid": call.sid, "message": "call initiated"})


@app.websocket("/stream")
async def stream_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One call session per connection; it runs until the call ends.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    call_sid = websocket.query_params.get("CallSid", "")
    logger.info(
        "WebSocket connected",
        call_sid=call_sid,
        active_connections=metrics.active_connections,
    )

    # Import here to avoid circular imports and speed up startup
    from src.voicebot.session import CallSession

    connection = WebSocketConnection(websocket)
    session = None

    try:
        session = CallSession.create(connection)
        metrics.total_calls += 1
        metrics.active_calls += 1
        await session.begin()

    except ConfigError as e:
        logger.error("Cannot start call session", call_sid=call_sid, error=str(e))
        metrics.errors += 1

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_sid=call_sid,
            error_type=type(e).__name__,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if session:
            await session.shutdown("websocket handler exit")
            metrics.active_calls -= 1
        await connection.close()

        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            call_sid=call_sid,
            session=session.metrics.to_dict() if session else None,
            active_calls=metrics.active_calls,
        )


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
    config = get_config()
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
