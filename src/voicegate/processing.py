"""
Utterance processing pipeline.

A call session hands every finalized utterance to an `AudioPipeline`. The
default `SpeechPipeline` transcribes it, routes the text to the booking script
when one is running (otherwise to the response generator), and calls
`on_response` with the line to speak. `on_response` is awaited at most once and
never after a failure; failures are reported through `on_event` instead.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from src.voicegate.booking import BookingFlow
from src.voicegate.conversation_log import ConversationLog
from src.voicegate.events import AI_RESPONSE, PROCESSING_ERROR, USER_SPEECH
from src.voicegate.session import CallContext

logger = structlog.get_logger(__name__)

OnResponse = Callable[[str], Awaitable[None]]
OnEvent = Callable[[str, Dict[str, Any]], None]


class AudioPipeline(Protocol):
    async def process_utterance(
        self,
        context: CallContext,
        audio: bytes,
        on_response: OnResponse,
        on_event: OnEvent,
    ) -> None:
        ...


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SpeechPipeline:
    """Speech-to-text, then booking script or response generator."""

    def __init__(
        self,
        transcriber: Any,
        responder: Any,
        booking: BookingFlow,
        conversation_log: Optional[ConversationLog] = None,
    ):
        self.transcriber = transcriber
        self.responder = responder
        self.booking = booking
        self.conversation_log = conversation_log

    async def process_utterance(
        self,
        context: CallContext,
        audio: bytes,
        on_response: OnResponse,
        on_event: OnEvent,
    ) -> None:
        log = logger.bind(call_sid=context.call_sid, stream_sid=context.stream_sid)

        try:
            transcript = await self.transcriber.transcribe(audio)
            text = transcript.text.strip()
            if not text:
                log.info("Empty transcription, nothing to answer", audio_bytes=len(audio))
                return

            on_event(USER_SPEECH, {"text": text, "timestamp": _timestamp()})

            if self.booking.has_active_session(context.call_sid):
                reply = self.booking.handle_input(context.call_sid, text)
                source = "booking"
            else:
                response = await self.responder.generate(
                    context.call_sid,
                    text,
                    assistant_name=context.assistant_name,
                )
                reply = response.text
                source = "llm"

            if not reply:
                log.warning("Empty reply, nothing to play", source=source)
                return

            on_event(AI_RESPONSE, {"text": reply, "source": source, "timestamp": _timestamp()})
            if self.conversation_log is not None:
                self.conversation_log.add_interaction(context.call_sid, question=text, answer=reply, source=source)

        except Exception as e:
            log.error("Utterance processing failed", error=str(e))
            on_event(PROCESSING_ERROR, {"error": str(e), "timestamp": _timestamp()})
            if self.conversation_log is not None:
                self.conversation_log.add_interaction(context.call_sid, question="", error=str(e))
            return

        await on_response(reply)
