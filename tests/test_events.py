"""
Tests for the conversation event hub and conversation log.
"""

import json
import os

import pytest

from src.voicegate.conversation_log import ConversationLog
from src.voicegate.events import (
    AI_RESPONSE,
    CALL_ENDED,
    CALL_STARTED,
    USER_SPEECH,
    ConversationEventHub,
)


class Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestEventHub:
    @pytest.mark.asyncio
    async def test_subscriber_receives_live_events(self):
        hub = ConversationEventHub()
        subscription = hub.subscribe("CA1")

        hub.broadcast("CA1", USER_SPEECH, {"text": "hello"})
        hub.broadcast("CA2", USER_SPEECH, {"text": "other call"})

        event = await subscription.get()
        assert event.event_type == USER_SPEECH
        assert event.data == {"text": "hello"}
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_replay(self):
        hub = ConversationEventHub()
        hub.broadcast("CA1", CALL_STARTED, {"streamSid": "MZ1"})
        hub.broadcast("CA1", AI_RESPONSE, {"text": "hi"})

        subscription = hub.subscribe("CA1")

        assert (await subscription.get()).event_type == CALL_STARTED
        assert (await subscription.get()).event_type == AI_RESPONSE

    def test_old_events_expire(self):
        clock = Clock()
        hub = ConversationEventHub(retention_seconds=300, clock=clock)
        hub.broadcast("CA1", CALL_STARTED)

        clock.now += 301

        assert hub.recent_events("CA1") == []

    def test_new_call_sweeps_expired_calls(self):
        clock = Clock()
        hub = ConversationEventHub(retention_seconds=300, clock=clock)
        hub.broadcast("CA1", CALL_ENDED)
        clock.now += 301

        hub.broadcast("CA2", CALL_STARTED)

        assert "CA1" not in hub._recent

    def test_missing_call_sid_is_dropped(self):
        hub = ConversationEventHub()
        hub.broadcast("", USER_SPEECH, {"text": "x"})

        assert hub._recent == {}

    def test_full_subscriber_does_not_raise(self):
        hub = ConversationEventHub()
        subscription = hub.subscribe("CA1")
        for i in range(subscription.queue.maxsize + 5):
            hub.broadcast("CA1", USER_SPEECH, {"i": i})

        assert subscription.queue.full()

    def test_unsubscribe(self):
        hub = ConversationEventHub()
        subscription = hub.subscribe("CA1")
        assert hub.subscriber_count("CA1") == 1

        hub.unsubscribe(subscription)
        hub.unsubscribe(subscription)

        assert hub.subscriber_count("CA1") == 0

    def test_to_dict(self):
        hub = ConversationEventHub(clock=lambda: 0.0)
        hub.broadcast("CA1", USER_SPEECH, {"text": "hello"})

        assert hub.recent_events("CA1")[0].to_dict() == {
            "event": USER_SPEECH,
            "callSid": "CA1",
            "data": {"text": "hello"},
            "timestamp": "1970-01-01T00:00:00+00:00",
        }


class TestConversationLog:
    @pytest.mark.asyncio
    async def test_summary(self):
        log = ConversationLog()
        log.start_session("CA1", "general", "+1555")
        log.add_interaction("CA1", question="hi", answer="hello")
        log.add_interaction("CA1", question="", error="stt down")

        summary = await log.end_session("CA1")

        assert summary["call_sid"] == "CA1"
        assert summary["phone_number"] == "+1555"
        assert summary["total_interactions"] == 2
        assert summary["error_count"] == 1
        assert log.get_session("CA1") is None

    @pytest.mark.asyncio
    async def test_end_unknown_session(self):
        assert await ConversationLog().end_session("CA1") is None

    def test_interaction_for_unknown_call_is_ignored(self):
        log = ConversationLog()
        log.add_interaction("CA1", question="hi")
        assert log.get_session("CA1") is None

    def test_start_is_idempotent(self):
        log = ConversationLog()
        first = log.start_session("CA1", "general")
        assert log.start_session("CA1", "hotel") is first

    @pytest.mark.asyncio
    async def test_written_to_directory(self, tmp_path):
        log = ConversationLog(log_directory=str(tmp_path / "calls"))
        log.start_session("CA1", "restaurant")
        log.add_interaction("CA1", question="table for two", answer="Sure", source="llm")

        await log.end_session("CA1")

        with open(os.path.join(tmp_path, "calls", "CA1.json")) as f:
            data = json.load(f)
        assert data["assistant_type"] == "restaurant"
        assert data["interactions"][0]["question"] == "table for two"
        assert data["interactions"][0]["answer"] == "Sure"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call_sid", ["../escaped", "../../x", "a/b", "CA1.json", ""])
    async def test_unsafe_call_sid_is_not_written(self, tmp_path, call_sid):
        log_dir = tmp_path / "logs" / "calls"
        log = ConversationLog(log_directory=str(log_dir))
        log.start_session(call_sid, "general")

        summary = await log.end_session(call_sid)

        assert summary["call_sid"] == call_sid
        written = [p for p in tmp_path.rglob("*") if p.is_file()]
        assert written == []
