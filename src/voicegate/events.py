"""
Conversation event hub.

Call sessions publish lifecycle events (callStarted, userSpeech, aiResponse, ...)
keyed by call sid. Observers subscribe per call sid, typically via the
`/events/{call_sid}` WebSocket, and first receive the events retained for that
call so a dashboard opened mid-call still sees the conversation so far.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

CALL_STARTED = "callStarted"
CALL_ENDED = "callEnded"
USER_SPEECH = "userSpeech"
AI_RESPONSE = "aiResponse"
PROCESSING_ERROR = "processingError"
BOOKING_STARTED = "bookingStarted"


@dataclass(frozen=True)
class ConversationEvent:
    call_sid: str
    event_type: str
    data: Dict[str, Any]
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type,
            "callSid": self.call_sid,
            "data": self.data,
            "timestamp": datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat(),
        }


@dataclass
class EventSubscription:
    """A subscriber's view of one call's events."""

    call_sid: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1000))

    async def get(self) -> ConversationEvent:
        return await self.queue.get()


class ConversationEventHub:
    def __init__(self, retention_seconds: float = 300.0, clock: Callable[[], float] = time.time):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._recent: Dict[str, List[ConversationEvent]] = {}
        self._subscribers: Dict[str, List[EventSubscription]] = {}

    def broadcast(self, call_sid: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record an event and fan it out. Never raises and never blocks."""
        if not call_sid:
            logger.debug("Dropping conversation event without call sid", event_type=event_type)
            return

        event = ConversationEvent(
            call_sid=call_sid,
            event_type=event_type,
            data=dict(data or {}),
            created_at=self._clock(),
        )
        if event_type == CALL_STARTED:
            # Expired calls are only swept when a new one begins.
            for sid in list(self._recent):
                self._prune(sid)
        self._recent.setdefault(call_sid, []).append(event)
        self._prune(call_sid)

        for subscription in list(self._subscribers.get(call_sid, [])):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event subscriber queue full, dropping event", call_sid=call_sid, event_type=event_type)

        logger.debug("Conversation event", call_sid=call_sid, event_type=event_type)

    def subscribe(self, call_sid: str) -> EventSubscription:
        """Register an observer; retained events are queued for it immediately."""
        subscription = EventSubscription(call_sid=call_sid)
        self._prune(call_sid)
        for event in self._recent.get(call_sid, []):
            subscription.queue.put_nowait(event)
        self._subscribers.setdefault(call_sid, []).append(subscription)
        logger.info("Event subscriber registered", call_sid=call_sid, replayed=subscription.queue.qsize())
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        subscribers = self._subscribers.get(subscription.call_sid)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.call_sid]

    def recent_events(self, call_sid: str) -> List[ConversationEvent]:
        self._prune(call_sid)
        return list(self._recent.get(call_sid, []))

    def subscriber_count(self, call_sid: str) -> int:
        return len(self._subscribers.get(call_sid, []))

    def _prune(self, call_sid: str) -> None:
        events = self._recent.get(call_sid)
        if not events:
            return
        cutoff = self._clock() - self.retention_seconds
        kept = [e for e in events if e.created_at > cutoff]
        if kept:
            self._recent[call_sid] = kept
        else:
            del self._recent[call_sid]
