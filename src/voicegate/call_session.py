"""
Per-stream call session.

One `CallSession` owns one `StreamSession` and runs as an actor: inbound Twilio
frames and internal completions (pipeline response, pipeline finished, playback
finished) go through a single inbox and are handled one at a time by one task.
Pipeline calls and playback run in background tasks that only report back
through the inbox, so no two events for the same stream ever interleave.

Phases:
- AWAITING_WELCOME -> PLAYING (welcome) as soon as the session starts
- PLAYING (welcome) -> LISTENING when the welcome mark comes back; media that
  arrived meanwhile is replayed in order
- LISTENING: chunks are scored and buffered by sequence number until an
  utterance boundary, then handed to the pipeline (-> PROCESSING_UTTERANCE)
- PROCESSING_UTTERANCE: media is dropped until the pipeline answers (-> PLAYING)
  or finishes without an answer (-> LISTENING)
- PLAYING: loud chunks can barge in (-> LISTENING); the end mark returns to
  LISTENING as well
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

import structlog

from src.voicegate.audio import mulaw_average_amplitude
from src.voicegate.booking import BookingFlow
from src.voicegate.events import BOOKING_STARTED, CALL_STARTED, PROCESSING_ERROR, ConversationEventHub
from src.voicegate.playback import PlaybackOutcome, PlaybackSequencer, Synthesizer
from src.voicegate.processing import AudioPipeline
from src.voicegate.session import CallContext, SessionPhase, StreamSession
from src.voicegate.twilio_protocol import (
    DtmfDigit,
    TwilioDTMFEvent,
    TwilioMarkEvent,
    TwilioMediaEvent,
)
from src.voicegate.vad import VoiceActivityThresholds

logger = structlog.get_logger(__name__)


def welcome_message(context: CallContext) -> str:
    return (
        f"Hello, I am your {context.assistant_name} assistant. How can I help you today? "
        "If you'd like to make a booking, please press 1 on your keypad."
    )


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class _PlayWelcome:
    pass


@dataclass
class _ResponseReady:
    utterance_id: int
    text: str


@dataclass
class _ProcessingFinished:
    utterance_id: int
    responded: bool


@dataclass
class _PlaybackFinished:
    marker: str
    outcome: PlaybackOutcome


InboxItem = Union[
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    _PlayWelcome,
    _ResponseReady,
    _ProcessingFinished,
    _PlaybackFinished,
]


class CallSession:
    """State machine for one Twilio media stream."""

    def __init__(
        self,
        context: CallContext,
        transport: Any,
        pipeline: AudioPipeline,
        synthesizer: Synthesizer,
        thresholds: Optional[VoiceActivityThresholds] = None,
        *,
        events: Optional[ConversationEventHub] = None,
        booking: Optional[BookingFlow] = None,
        initial_media: Optional[List[TwilioMediaEvent]] = None,
        frame_interval_ms: int = 20,
        restart_delay_ms: int = 100,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.state = StreamSession(context=context, transport=transport)
        if initial_media:
            self.state.initial_media.extend(initial_media)
        self.thresholds = thresholds or VoiceActivityThresholds()
        self.pipeline = pipeline
        self.events = events
        self.booking = booking
        self.sequencer = PlaybackSequencer(
            transport,
            context.stream_sid,
            synthesizer,
            frame_interval_ms=frame_interval_ms,
            restart_delay_ms=restart_delay_ms,
        )
        self._clock = clock
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._closed = False
        self._log = logger.bind(stream_sid=context.stream_sid, call_sid=context.call_sid)

    @property
    def context(self) -> CallContext:
        return self.state.context

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the actor and queue the welcome line."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        self._emit(
            CALL_STARTED,
            {
                "streamSid": self.context.stream_sid,
                "assistantType": self.context.assistant_type,
                "caller": self.context.caller,
            },
        )
        self.post(_PlayWelcome())

    def post(self, item: InboxItem) -> None:
        if self._closed:
            self._log.debug("Dropping event for closed session", item=type(item).__name__)
            return
        self._inbox.put_nowait(item)

    async def close(self) -> None:
        """
        Stop the actor and any playback.

        In-flight pipeline calls keep running; whatever they report afterwards
        is dropped.
        """
        if self._closed:
            return
        self._closed = True
        self.sequencer.halt()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._log.info(
            "Call session closed",
            phase=self.state.phase.value,
            utterances=self.state.utterance_id,
        )

    async def wait_idle(self) -> None:
        """Wait until the inbox is drained and no background work is left."""
        while not self._closed:
            await self._inbox.join()
            pending = [t for t in self._background if not t.done()]
            if not pending:
                if self._inbox.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                await self._handle(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Don't let one bad event kill the session
                self._log.error("Error handling session event", item=type(item).__name__, error=str(e))
            finally:
                self._inbox.task_done()

    async def _handle(self, item: InboxItem) -> None:
        if isinstance(item, TwilioMediaEvent):
            await self._on_media(item)
        elif isinstance(item, TwilioMarkEvent):
            await self._on_mark(item.name)
        elif isinstance(item, TwilioDTMFEvent):
            await self._on_dtmf(item)
        elif isinstance(item, _ResponseReady):
            self._on_response_ready(item)
        elif isinstance(item, _ProcessingFinished):
            self._on_processing_finished(item)
        elif isinstance(item, _PlaybackFinished):
            await self._on_playback_finished(item)
        elif isinstance(item, _PlayWelcome):
            self._play_welcome()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.broadcast(self.context.call_sid, event_type, data)
        except Exception as e:
            self._log.warning("Failed to broadcast conversation event", event_type=event_type, error=str(e))

    # ------------------------------------------------------------------
    # Inbound audio
    # ------------------------------------------------------------------

    async def _on_media(self, event: TwilioMediaEvent) -> None:
        s = self.state
        if s.welcome_active or s.phase == SessionPhase.AWAITING_WELCOME:
            s.initial_media.append(event)
            return
        if not event.payload:
            return

        seq = s.sequence_for(event)
        amplitude = mulaw_average_amplitude(event.payload)

        if s.phase == SessionPhase.LISTENING:
            self._listen(seq, event.payload, amplitude)
        elif s.phase == SessionPhase.PLAYING:
            await self._watch_for_barge_in(seq, event.payload, amplitude)
        # PROCESSING_UTTERANCE: dropped until the pipeline answers

    def _listen(self, seq: int, payload: bytes, amplitude: float) -> None:
        s = self.state
        t = self.thresholds
        s.chunk_buffer[seq] = payload
        if t.is_active(amplitude):
            s.active_run += 1
            s.silence_run = 0
        else:
            s.silence_run += 1

        if t.should_finalize(s.silence_run, s.active_run, len(s.chunk_buffer)):
            self._finalize_utterance()

    def _finalize_utterance(self) -> None:
        s = self.state
        chunk_count = len(s.chunk_buffer) + len(s.barge_in_buffer)
        audio = s.take_utterance()
        s.reset_counters()
        s.utterance_id += 1
        s.phase = SessionPhase.PROCESSING_UTTERANCE
        self._log.info(
            "Utterance finalized",
            utterance_id=s.utterance_id,
            chunks=chunk_count,
            audio_bytes=len(audio),
        )
        self._spawn(self._run_pipeline(s.utterance_id, audio))

    async def _watch_for_barge_in(self, seq: int, payload: bytes, amplitude: float) -> None:
        s = self.state
        t = self.thresholds
        now = self._clock()

        if now - s.playback_started_at < t.playback_buffer_ms:
            return

        s.barge_in_buffer[seq] = payload

        if s.last_interrupt_at is not None and now - s.last_interrupt_at < t.interrupt_cooldown_ms:
            return

        if t.is_interrupt(amplitude):
            s.consecutive_loud_chunks += 1
        else:
            s.consecutive_loud_chunks = 0

        if s.consecutive_loud_chunks >= t.interrupt_chunk_count:
            await self._barge_in(now)

    async def _barge_in(self, now: float) -> None:
        s = self.state
        self._log.info(
            "Barge-in detected",
            loud_chunks=s.consecutive_loud_chunks,
            buffered_chunks=len(s.barge_in_buffer),
            marker=s.pending_ack_marker,
        )
        s.interrupted = True
        s.consecutive_loud_chunks = 0
        s.reset_counters()
        s.last_interrupt_at = now
        s.pending_ack_marker = None
        s.phase = SessionPhase.LISTENING
        await self.sequencer.stop()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(self, utterance_id: int, audio: bytes) -> None:
        responded = False

        async def on_response(text: str) -> None:
            nonlocal responded
            if responded:
                self._log.warning("Ignoring repeated pipeline response", utterance_id=utterance_id)
                return
            responded = True
            self.post(_ResponseReady(utterance_id=utterance_id, text=text))

        try:
            await self.pipeline.process_utterance(self.context, audio, on_response, self._emit)
        except Exception as e:
            self._log.error("Pipeline failed", utterance_id=utterance_id, error=str(e))
            self._emit(PROCESSING_ERROR, {"error": str(e)})
        finally:
            self.post(_ProcessingFinished(utterance_id=utterance_id, responded=responded))

    def _on_response_ready(self, item: _ResponseReady) -> None:
        s = self.state
        if item.utterance_id != s.utterance_id or s.phase != SessionPhase.PROCESSING_UTTERANCE:
            self._log.info(
                "Discarding stale pipeline response",
                utterance_id=item.utterance_id,
                current_utterance_id=s.utterance_id,
                phase=s.phase.value,
            )
            return
        if not item.text or not item.text.strip():
            s.phase = SessionPhase.LISTENING
            return
        s.barge_in_buffer.clear()
        self._begin_playback(item.text, "response")

    def _on_processing_finished(self, item: _ProcessingFinished) -> None:
        s = self.state
        if item.responded:
            return
        if item.utterance_id == s.utterance_id and s.phase == SessionPhase.PROCESSING_UTTERANCE:
            self._log.info("Pipeline produced no response, listening again", utterance_id=item.utterance_id)
            s.phase = SessionPhase.LISTENING

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def _play_welcome(self) -> None:
        s = self.state
        if s.phase != SessionPhase.AWAITING_WELCOME:
            return
        s.welcome_active = True
        self._begin_playback(welcome_message(self.context), "welcome")

    def _begin_playback(self, text: str, prefix: str) -> None:
        s = self.state
        marker = s.next_marker(prefix)
        s.pending_ack_marker = marker
        s.interrupted = False
        s.consecutive_loud_chunks = 0
        s.phase = SessionPhase.PLAYING
        s.playback_started_at = self._clock()
        self._spawn(self._play(text, marker))

    async def _play(self, text: str, marker: str) -> None:
        if self.state.pending_ack_marker != marker:
            # Superseded before it started
            return

        def on_started() -> None:
            self.state.playback_started_at = self._clock()

        outcome = await self.sequencer.play(text, marker, on_started=on_started)
        self.post(_PlaybackFinished(marker=marker, outcome=outcome))

    async def _on_playback_finished(self, item: _PlaybackFinished) -> None:
        s = self.state
        if item.outcome != PlaybackOutcome.FAILED or item.marker != s.pending_ack_marker:
            return

        self._log.warning("Playback failed, listening again", marker=item.marker)
        s.pending_ack_marker = None
        s.consecutive_loud_chunks = 0
        if s.welcome_active:
            await self._finish_welcome()
        else:
            s.phase = SessionPhase.LISTENING

    async def _on_mark(self, name: str) -> None:
        s = self.state
        self.sequencer.acknowledge(name)
        if not name or name != s.pending_ack_marker:
            self._log.debug("Ignoring mark", mark_name=name, expected=s.pending_ack_marker)
            return

        s.pending_ack_marker = None
        if s.welcome_active:
            await self._finish_welcome()
            return

        if s.phase == SessionPhase.PLAYING and not s.interrupted:
            s.phase = SessionPhase.LISTENING
            self._log.debug("Playback acknowledged", mark_name=name, leftover_chunks=len(s.barge_in_buffer))
            self._replay_leftovers()

    def _replay_leftovers(self) -> None:
        """
        Feed audio captured during playback through endpointing as a new attempt.

        Leftovers are not handed to the pipeline directly. They have to meet the
        same thresholds as live audio, and whatever falls short stays in the
        listening buffer for the chunks that follow.
        """
        s = self.state
        if not s.barge_in_buffer:
            return
        leftovers = sorted(s.barge_in_buffer.items())
        s.barge_in_buffer.clear()
        for seq, payload in leftovers:
            if s.phase != SessionPhase.LISTENING:
                break
            self._listen(seq, payload, mulaw_average_amplitude(payload))

    async def _finish_welcome(self) -> None:
        s = self.state
        s.welcome_active = False
        s.phase = SessionPhase.LISTENING
        queued = s.initial_media
        s.initial_media = []
        self._log.info("Welcome finished, listening", replayed_chunks=len(queued))
        for event in queued:
            await self._on_media(event)

    # ------------------------------------------------------------------
    # Keypad
    # ------------------------------------------------------------------

    async def _on_dtmf(self, event: TwilioDTMFEvent) -> None:
        digit = event.digit
        call_sid = self.context.call_sid
        if digit is None:
            self._log.info("Ignoring unrecognized DTMF", raw=event.raw)
            return
        if self.booking is None:
            self._log.info("DTMF received but booking is not available", digit=digit.value)
            return

        if digit == DtmfDigit.ONE:
            prompt = self.booking.start(call_sid)
            self._emit(BOOKING_STARTED, {"digit": digit.value})
        elif digit in (DtmfDigit.FOUR, DtmfDigit.FIVE) and self.booking.has_active_session(call_sid):
            prompt = self.booking.handle_input(call_sid, digit.value)
        else:
            self._log.info("DTMF digit has no action", digit=digit.value)
            return

        s = self.state
        if s.welcome_active:
            # Caller skipped the welcome; audio queued behind it joins the next attempt.
            s.welcome_active = False
            for queued in s.initial_media:
                if queued.payload:
                    s.barge_in_buffer[s.sequence_for(queued)] = queued.payload
            s.initial_media = []
        elif s.phase == SessionPhase.LISTENING:
            # The keypad takes over; a half-heard utterance is abandoned.
            s.chunk_buffer.clear()
            s.reset_counters()

        # The sequencer stops whatever is still playing before starting the prompt.
        self._log.info("Playing keypad prompt", digit=digit.value)
        self._begin_playback(prompt, "response")
