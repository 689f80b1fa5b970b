"""
FastAPI server for the speech-practice phone agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /twiml, /incoming-call: TwiML for the Twilio voice webhook
- POST /api/call: Place an outbound practice call
- GET /api/tts-audio/{filename}: Serve synthesized feedback audio
- POST /api/stream-status: Twilio stream status callback
- WS /api/media-stream (alias /ws): Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qs
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import FileResponse, JSONResponse
from starlette.websockets import WebSocketState
import structlog
import uvicorn

from src.speechcoach.call_control import CallControl, build_stream_twiml, build_stream_url, resolve_base_url
from src.speechcoach.config import get_config, init_config
from src.speechcoach.conversation import validate_llm_model
from src.speechcoach.errors import AdapterError, ConfigurationError, TransportError
from src.speechcoach.orchestrator import create_orchestrator
from src.speechcoach.results import ResultsStore
from src.speechcoach.session import SessionRegistry


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
    calls_initiated: int = 0
    feedback_audio_served: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "active_sessions": len(registry),
            "calls_initiated": self.calls_initiated,
            "feedback_audio_served": self.feedback_audio_served,
            "errors": self.errors,
        }


metrics = ServerMetrics()
registry = SessionRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting speech practice server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        await validate_llm_model(config)

        logger.info(
            "Server ready",
            port=config.port,
            base_url=config.base_url,
            ws_url=config.ws_url,
        )

    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...", active_sessions=len(registry))


app = FastAPI(
    title="Speech Practice Agent",
    description="Phone-based speaking practice with live pronunciation assessment",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.registry = registry


def _request_base_url(request: Request) -> str:
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    return resolve_base_url(get_config(), host, request.headers.get("x-forwarded-proto"))


async def _extract_call_sid(request: Request) -> Optional[str]:
    """
    CallSid from a Twilio webhook.

    Tried in order: parsed form body, raw body as a query string, URL query.
    """
    if request.method == "POST":
        # Read first so the cached body survives form parsing
        raw_body = await request.body()
        try:
            form = await request.form()
            call_sid = form.get("CallSid")
            if call_sid:
                return str(call_sid)
        except Exception as e:
            logger.debug("Webhook body is not form data", error=str(e))

        try:
            values = parse_qs(raw_body.decode("utf-8", errors="ignore")).get("CallSid")
            if values and values[0]:
                return values[0]
        except Exception as e:
            logger.debug("Webhook body could not be parsed", error=str(e))

    return request.query_params.get("CallSid") or None


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": len(registry),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/twiml")
@app.get("/twiml")
@app.post("/incoming-call")
@app.get("/incoming-call")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    Returns TwiML that connects the call to our media-stream WebSocket.
    """
    call_sid = await _extract_call_sid(request)
    base_url = _request_base_url(request)
    stream_url = build_stream_url(base_url, call_sid)
    twiml = build_stream_twiml(stream_url, call_sid, status_callback_url=f"{base_url}/api/stream-status")

    logger.info("Generated TwiML", stream_url=stream_url, call_sid=call_sid)

    return Response(content=twiml, media_type="application/xml")


@app.post("/api/call")
async def initiate_call(request: Request) -> JSONResponse:
    """Place an outbound call that streams into this server."""
    try:
        payload = await request.json()
    except Exception:
        payload = {}

    phone = payload.get("phone") if isinstance(payload, dict) else None
    if not phone:
        return JSONResponse(status_code=400, content={"error": "Phone number is required"})

    webhook_url = f"{_request_base_url(request)}/twiml"
    try:
        call_control = CallControl(get_config())
        call = await call_control.create_call(phone, webhook_url)
    except (ConfigurationError, AdapterError) as e:
        logger.error("Failed to initiate call", error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"error": str(e)})

    metrics.calls_initiated += 1
    return JSONResponse(content={"success": True, "callSid": call["call_sid"]})


@app.get("/api/tts-audio/{filename}")
async def get_tts_audio(filename: str) -> Response:
    """Serve a synthesized feedback WAV written during a call."""
    config = get_config()
    path = ResultsStore(config.results_dir).tts_path(filename)
    if path is None:
        return JSONResponse(status_code=404, content={"error": "Audio file not found"})

    metrics.feedback_audio_served += 1
    return FileResponse(path, media_type="audio/wav")


@app.post("/api/stream-status")
async def stream_status(request: Request) -> Response:
    """Twilio stream status callback; attaches late CallSids to sessions."""
    try:
        form = await request.form()
        params = {k: str(v) for k, v in form.items()}
    except Exception:
        params = {}

    stream_sid = params.get("StreamSid", "")
    call_sid = params.get("CallSid", "")
    attached = registry.correlate(stream_sid, call_sid)

    logger.info(
        "Stream status",
        stream_sid=stream_sid,
        call_sid=call_sid,
        stream_event=params.get("StreamEvent"),
        attached=attached,
    )
    return Response(status_code=204)


@app.websocket("/api/media-stream")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    call_sid_hint = websocket.query_params.get("callSid")
    connection_id = f"conn_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        connection_id=connection_id,
        call_sid=call_sid_hint,
        active_connections=metrics.active_connections,
    )

    orchestrator = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        if websocket.client_state != WebSocketState.CONNECTED:
            raise TransportError("WebSocket is not open")
        await websocket.send_text(message)

    try:
        orchestrator = await create_orchestrator(send_message, registry, call_sid_hint=call_sid_hint)

        while True:
            try:
                message = await websocket.receive_text()
                await orchestrator.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=connection_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    connection_id=connection_id,
                    error=str(e),
                )
                metrics.errors += 1
                if websocket.client_state != WebSocketState.CONNECTED:
                    break
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            connection_id=connection_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if orchestrator:
            try:
                await orchestrator.close()
            except Exception as e:
                logger.error("Error closing media stream", error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Connection ended",
            connection_id=connection_id,
            active_connections=metrics.active_connections,
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
