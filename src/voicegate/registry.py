"""
Stream session registry.

Owns every live `CallSession`, keyed by stream sid, and routes parsed Twilio
frames to them. Media that shows up before its `start` frame is parked in a
`PendingMediaQueue` and handed to the session when it is created. All methods
run on the server's event loop; nothing here is shared across threads.
"""

from __future__ import annotations

from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from src.voicegate.booking import BookingFlow
from src.voicegate.call_session import CallSession
from src.voicegate.conversation_log import ConversationLog
from src.voicegate.events import CALL_ENDED, ConversationEventHub
from src.voicegate.playback import Synthesizer
from src.voicegate.processing import AudioPipeline
from src.voicegate.session import CallContext
from src.voicegate.twilio_protocol import (
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    TwilioStopEvent,
    UnknownEventError,
    parse_twilio_message,
)
from src.voicegate.vad import VoiceActivityThresholds

logger = structlog.get_logger(__name__)

_STOPPED_MEMORY = 1000


class PendingMediaQueue:
    """Media frames received before their stream's `start` frame."""

    def __init__(self, max_per_stream: int = 500):
        self.max_per_stream = max_per_stream
        self._queues: Dict[str, Deque[TwilioMediaEvent]] = {}
        self._owners: Dict[str, Any] = {}
        self.dropped = 0

    def add(self, event: TwilioMediaEvent, transport: Any) -> None:
        queue = self._queues.get(event.stream_sid)
        if queue is None:
            queue = deque(maxlen=self.max_per_stream)
            self._queues[event.stream_sid] = queue
            self._owners[event.stream_sid] = transport
            logger.info("Queueing media for stream that has not started", stream_sid=event.stream_sid)
        if len(queue) == queue.maxlen:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Pending media queue full, dropping oldest", stream_sid=event.stream_sid, dropped=self.dropped)
        queue.append(event)

    def take(self, stream_sid: str) -> List[TwilioMediaEvent]:
        """Remove and return the queued frames for a stream, oldest first."""
        self._owners.pop(stream_sid, None)
        queue = self._queues.pop(stream_sid, None)
        return list(queue) if queue else []

    def discard(self, stream_sid: str) -> int:
        return len(self.take(stream_sid))

    def discard_transport(self, transport: Any) -> int:
        stream_sids = [sid for sid, owner in self._owners.items() if owner is transport]
        return sum(self.discard(sid) for sid in stream_sids)

    def count(self, stream_sid: str) -> int:
        queue = self._queues.get(stream_sid)
        return len(queue) if queue else 0

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())


class StreamRegistry:
    """
    Routes Twilio frames to per-stream call sessions.

    Ending a session (stop frame or socket disconnect) fires the end-of-call
    hook exactly once: `callEnded` event, conversation log close, booking clear
    and LLM history drop.
    """

    def __init__(
        self,
        pipeline: AudioPipeline,
        synthesizer: Synthesizer,
        thresholds: Optional[VoiceActivityThresholds] = None,
        *,
        events: Optional[ConversationEventHub] = None,
        booking: Optional[BookingFlow] = None,
        conversation_log: Optional[ConversationLog] = None,
        responder: Optional[Any] = None,
        default_assistant_type: str = "general",
        pending_queue_max: int = 500,
        frame_interval_ms: int = 20,
        restart_delay_ms: int = 100,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.pipeline = pipeline
        self.synthesizer = synthesizer
        self.thresholds = thresholds or VoiceActivityThresholds()
        self.events = events
        self.booking = booking
        self.conversation_log = conversation_log
        self.responder = responder
        self.default_assistant_type = default_assistant_type
        self.frame_interval_ms = frame_interval_ms
        self.restart_delay_ms = restart_delay_ms
        self._clock = clock

        self.pending = PendingMediaQueue(max_per_stream=pending_queue_max)
        self._sessions: Dict[str, CallSession] = {}
        self._owners: Dict[str, Any] = {}
        self._stopped: "OrderedDict[str, None]" = OrderedDict()
        self.total_sessions = 0
        self.dropped_frames = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, stream_sid: str) -> Optional[CallSession]:
        return self._sessions.get(stream_sid)

    def sessions_for(self, transport: Any) -> List[CallSession]:
        return [self._sessions[sid] for sid, owner in self._owners.items() if owner is transport]

    async def dispatch(self, raw: Any, transport: Any) -> Optional[TwilioEventType]:
        """
        Parse one raw frame and route it.

        Malformed and unknown frames are logged and dropped.
        """
        try:
            event_type, event = parse_twilio_message(raw)
        except UnknownEventError as e:
            logger.debug("Ignoring unknown Twilio event", error=str(e))
            return None
        except ValueError as e:
            logger.warning("Dropping malformed Twilio frame", error=str(e))
            self.dropped_frames += 1
            return None

        if event_type == TwilioEventType.CONNECTED:
            logger.info("Twilio media stream connected", protocol=event.get("protocol"), version=event.get("version"))
        elif event_type == TwilioEventType.START:
            await self.on_start(event, transport)
        elif event_type == TwilioEventType.MEDIA:
            self.on_media(event, transport)
        elif event_type == TwilioEventType.MARK:
            self._route(event, "mark")
        elif event_type == TwilioEventType.DTMF:
            self._route(event, "dtmf")
        elif event_type == TwilioEventType.STOP:
            await self.on_stop(event.stream_sid)
        return event_type

    async def on_start(self, event: TwilioStartEvent, transport: Any) -> Optional[CallSession]:
        stream_sid = event.stream_sid
        if not stream_sid:
            logger.warning("Start frame without streamSid", call_sid=event.call_sid)
            return None

        existing = self._sessions.get(stream_sid)
        if existing is not None:
            logger.warning("Duplicate start for stream, replacing session", stream_sid=stream_sid)
            await self._end(stream_sid, reason="restarted")

        self._stopped.pop(stream_sid, None)
        context = CallContext(
            call_sid=event.call_sid,
            stream_sid=stream_sid,
            assistant_type=event.assistant_type or self.default_assistant_type,
            caller=event.caller,
            thread_id=event.call_sid or None,
        )
        initial_media = self.pending.take(stream_sid)

        kwargs: Dict[str, Any] = {}
        if self._clock is not None:
            kwargs["clock"] = self._clock
        session = CallSession(
            context,
            transport,
            self.pipeline,
            self.synthesizer,
            self.thresholds,
            events=self.events,
            booking=self.booking,
            initial_media=initial_media,
            frame_interval_ms=self.frame_interval_ms,
            restart_delay_ms=self.restart_delay_ms,
            **kwargs,
        )
        self._sessions[stream_sid] = session
        self._owners[stream_sid] = transport
        self.total_sessions += 1

        if self.conversation_log is not None:
            self.conversation_log.start_session(context.call_sid, context.assistant_type, context.caller)

        logger.info(
            "Call started",
            stream_sid=stream_sid,
            call_sid=context.call_sid,
            assistant_type=context.assistant_type,
            queued_media=len(initial_media),
            active_calls=self.active_count,
        )
        session.start()
        return session

    def on_media(self, event: TwilioMediaEvent, transport: Any) -> None:
        stream_sid = event.stream_sid
        if not stream_sid:
            logger.warning("Dropping media without streamSid")
            return

        session = self._sessions.get(stream_sid)
        if session is not None:
            session.post(event)
        elif stream_sid in self._stopped:
            logger.warning("Dropping media for stopped stream", stream_sid=stream_sid)
        else:
            self.pending.add(event, transport)

    def _route(self, event: Any, kind: str) -> None:
        session = self._sessions.get(event.stream_sid)
        if session is None:
            logger.warning("Dropping frame for unknown stream", kind=kind, stream_sid=event.stream_sid)
            return
        session.post(event)

    async def on_stop(self, stream_sid: str) -> None:
        if stream_sid not in self._sessions:
            discarded = self.pending.discard(stream_sid)
            self._remember_stopped(stream_sid)
            logger.info("Stop for unknown stream", stream_sid=stream_sid, discarded_media=discarded)
            return
        await self._end(stream_sid, reason="stop")

    async def on_disconnect(self, transport: Any) -> None:
        """Tear down every session that was running on `transport`."""
        stream_sids = [sid for sid, owner in self._owners.items() if owner is transport]
        for stream_sid in stream_sids:
            await self._end(stream_sid, reason="disconnect")
        discarded = self.pending.discard_transport(transport)
        if stream_sids or discarded:
            logger.info("Transport disconnected", sessions=len(stream_sids), discarded_media=discarded)

    async def close_all(self) -> None:
        for stream_sid in list(self._sessions):
            await self._end(stream_sid, reason="shutdown")

    def _remember_stopped(self, stream_sid: str) -> None:
        if not stream_sid:
            return
        self._stopped[stream_sid] = None
        self._stopped.move_to_end(stream_sid)
        while len(self._stopped) > _STOPPED_MEMORY:
            self._stopped.popitem(last=False)

    async def _end(self, stream_sid: str, reason: str) -> None:
        session = self._sessions.pop(stream_sid, None)
        self._owners.pop(stream_sid, None)
        self._remember_stopped(stream_sid)
        if session is None:
            return

        await session.close()

        call_sid = session.context.call_sid
        if self.events is not None:
            self.events.broadcast(call_sid, CALL_ENDED, {"streamSid": stream_sid, "reason": reason})
        if self.conversation_log is not None:
            await self.conversation_log.end_session(call_sid)
        if self.booking is not None:
            self.booking.clear_session(call_sid)
        if self.responder is not None:
            self.responder.forget(call_sid)

        logger.info(
            "Call ended",
            stream_sid=stream_sid,
            call_sid=call_sid,
            reason=reason,
            active_calls=self.active_count,
        )
