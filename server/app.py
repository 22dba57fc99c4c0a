"""
FastAPI server for the Twilio Voice Gateway.

Endpoints:
- GET /health: liveness plus the number of live calls
- GET /metrics: connection, call and error counters
- POST|GET /voice/incoming (alias /twiml): TwiML for the Twilio voice webhook
- POST /voice/make-call: Start an outbound call
- POST /voice/end-call: Hang up a call
- WS /ws: Twilio Media Streams (one connection may carry several streams)
- WS /events/{call_sid}: Conversation events for one call
"""

import asyncio
import sys

if sys.platform != "win32":
    import uvloop

    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import msgspec
import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.voicegate.booking import BookingFlow
from src.voicegate.config import Config, ConfigError, get_config, init_config
from src.voicegate.conversation_log import ConversationLog
from src.voicegate.events import ConversationEventHub
from src.voicegate.llm import ResponseGenerator
from src.voicegate.processing import SpeechPipeline
from src.voicegate.registry import StreamRegistry
from src.voicegate.stt import OpenAITranscriber
from src.voicegate.transport import WebSocketTransport
from src.voicegate.tts import TTSManager


def configure_logging(log_level: str = "INFO") -> None:
    """JSON logs in production, console rendering when LOG_LEVEL=DEBUG."""
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
    """Process-wide counters; call counts come from the registry."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    event_subscribers: int = 0
    calls_placed: int = 0
    errors: int = 0

    def to_dict(self, registry: Optional[StreamRegistry] = None) -> Dict[str, Any]:
        data = {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "event_subscribers": self.event_subscribers,
            "calls_placed": self.calls_placed,
            "errors": self.errors,
            "total_calls": 0,
            "active_calls": 0,
        }
        if registry is not None:
            data.update(
                {
                    "total_calls": registry.total_sessions,
                    "active_calls": registry.active_count,
                    "pending_media": len(registry.pending),
                    "dropped_frames": registry.dropped_frames,
                }
            )
        return data


metrics = ServerMetrics()


class MakeCallRequest(BaseModel):
    toPhoneNumber: Optional[str] = None


class EndCallRequest(BaseModel):
    callSid: Optional[str] = None


def build_registry(config: Config) -> StreamRegistry:
    """Wire the call-handling collaborators for a validated config."""
    events = ConversationEventHub(retention_seconds=config.event_retention_seconds)
    booking = BookingFlow()
    conversation_log = ConversationLog(log_directory=config.conversation_log_dir)
    responder = ResponseGenerator(config)
    pipeline = SpeechPipeline(
        transcriber=OpenAITranscriber(config),
        responder=responder,
        booking=booking,
        conversation_log=conversation_log,
    )
    return StreamRegistry(
        pipeline,
        TTSManager(config),
        config.thresholds,
        events=events,
        booking=booking,
        conversation_log=conversation_log,
        responder=responder,
        default_assistant_type=config.default_assistant_type,
        pending_queue_max=config.pending_queue_max,
        frame_interval_ms=config.playback_frame_interval_ms,
        restart_delay_ms=config.playback_restart_delay_ms,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Voice gateway starting")

    try:
        config = init_config()
        configure_logging(config.log_level)

        registry = build_registry(config)
        # Fail fast on a misconfigured model
        await registry.responder.validate_model()
        app.state.registry = registry
        app.state.events = registry.events

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
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

    logger.info("Voice gateway stopping", active_calls=app.state.registry.active_count)
    await app.state.registry.close_all()
    await app.state.registry.synthesizer.close()


app = FastAPI(
    title="Twilio Voice Gateway",
    description="Voice assistant gateway for Twilio Media Streams",
    version="1.0.0",
    lifespan=lifespan,
)


def _registry(app: FastAPI) -> Optional[StreamRegistry]:
    return getattr(app.state, "registry", None)


def _twilio_client(config: Config) -> TwilioClient:
    return TwilioClient(config.twilio_account_sid, config.twilio_auth_token)


def build_twiml(ws_url: str, assistant_type: str, caller: str = "") -> str:
    """TwiML that connects the call to the media stream endpoint."""
    response = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=ws_url)
    stream.parameter(name="assistantType", value=assistant_type)
    stream.parameter(name="caller", value=caller)
    response.append(connect)
    return str(response)


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    registry = _registry(request.app)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": registry.active_count if registry else 0,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    return JSONResponse(content=metrics.to_dict(_registry(request.app)))


@app.post("/voice/incoming")
@app.get("/voice/incoming")
@app.post("/twiml")
@app.get("/twiml")
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Picks the assistant for the called number and returns TwiML that streams
    the call to our WebSocket endpoint.
    """
    config = get_config()

    form = await request.form()
    called = form.get("To") or request.query_params.get("To") or ""
    caller = form.get("From") or request.query_params.get("From") or ""
    assistant_type = config.assistant_type_for(str(called) or None)

    twiml = build_twiml(config.ws_url, assistant_type, str(caller))
    logger.info("Generated TwiML", ws_url=config.ws_url, called=called, assistant_type=assistant_type)

    return Response(content=twiml, media_type="application/xml")


@app.post("/voice/make-call")
async def make_call(body: MakeCallRequest) -> JSONResponse:
    """Place an outbound call that is answered by the TwiML app."""
    if not body.toPhoneNumber:
        return JSONResponse(status_code=400, content={"error": "toPhoneNumber is required"})

    config = get_config()
    if not config.twilio_configured:
        return JSONResponse(status_code=503, content={"error": "Twilio call control is not configured"})

    client = _twilio_client(config)
    try:
        call = await asyncio.to_thread(
            client.calls.create,
            to=body.toPhoneNumber,
            from_=config.twilio_phone_number,
            application_sid=config.twiml_app_sid,
        )
    except TwilioRestException as e:
        logger.error("Failed to place call", to=body.toPhoneNumber, error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=502, content={"error": "Failed to place call"})

    metrics.calls_placed += 1
    logger.info("Outbound call placed", call_sid=call.sid, to=body.toPhoneNumber)
    return JSONResponse(content={"callSid": call.sid, "status": call.status})


@app.post("/voice/end-call")
async def end_call(body: EndCallRequest) -> JSONResponse:
    """Hang up a call via the Twilio REST API."""
    if not body.callSid:
        return JSONResponse(status_code=400, content={"error": "callSid is required"})

    config = get_config()
    if not config.twilio_configured:
        return JSONResponse(status_code=503, content={"error": "Twilio call control is not configured"})

    client = _twilio_client(config)
    try:
        call = await asyncio.to_thread(client.calls(body.callSid).update, status="completed")
    except TwilioRestException as e:
        logger.error("Failed to end call", call_sid=body.callSid, error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=502, content={"error": "Failed to end call"})

    logger.info("Call hung up", call_sid=body.callSid)
    return JSONResponse(content={"callSid": call.sid, "status": call.status})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Media Streams socket. Every frame goes through the stream registry; a single
    bad frame never closes the connection.
    """
    registry = _registry(websocket.app)
    await websocket.accept()
    if registry is None:
        logger.error("Media stream rejected: server not initialized")
        await websocket.close(code=1011)
        return

    metrics.total_connections += 1
    metrics.active_connections += 1

    connection_id = f"conn_{int(time.time() * 1000)}"
    transport = WebSocketTransport(websocket, connection_id=connection_id)
    logger.info("WebSocket connected", connection_id=connection_id, active_calls=registry.active_count)

    try:
        while True:
            try:
                message = await websocket.receive_text()
                await registry.dispatch(message, transport)

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
                continue

    finally:
        transport.mark_closed()
        try:
            await registry.on_disconnect(transport)
        except Exception as e:
            logger.error("Error tearing down sessions", connection_id=connection_id, error=str(e))
            metrics.errors += 1

        metrics.active_connections -= 1
        logger.info("Connection closed", connection_id=connection_id, active_calls=registry.active_count)


@app.websocket("/events/{call_sid}")
async def conversation_events(websocket: WebSocket, call_sid: str) -> None:
    """Push conversation events for one call, starting with the retained ones."""
    registry = _registry(websocket.app)
    await websocket.accept()
    if registry is None or registry.events is None:
        await websocket.close(code=1011)
        return

    hub: ConversationEventHub = registry.events
    subscription = hub.subscribe(call_sid)
    metrics.event_subscribers += 1

    async def pump() -> None:
        while True:
            event = await subscription.get()
            await websocket.send_text(msgspec.json.encode(event.to_dict()).decode("utf-8"))

    async def drain() -> None:
        # Observers don't send anything meaningful; this only notices the close.
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    tasks = [asyncio.create_task(pump()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("Event stream failed", call_sid=call_sid, error=str(error))
    finally:
        # Nothing is awaited here: a client close can reach us as a cancellation.
        for task in tasks:
            task.cancel()
        hub.unsubscribe(subscription)
        metrics.event_subscribers -= 1
        logger.info("Event subscriber left", call_sid=call_sid)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Request failed", path=request.url.path, method=request.method, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
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
