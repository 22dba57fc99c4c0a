"""
Shared fixtures: test environment, fakes for the session collaborators, and
builders for inbound Twilio frames.
"""

import base64
import json
import os
from typing import Dict, List, Optional
from unittest.mock import patch

import pytest

from src.voicegate.session import CallContext
from src.voicegate.transport import TransportError
from src.voicegate.vad import VoiceActivityThresholds

LOUD = b"\x00" * 160   # decodes to -32124 on every sample
QUIET = b"\xff" * 160  # decodes to 0


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Known environment for every test; the config cache is reset around it."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_PHONE_NUMBER": "+15550001111",
        "TWIML_APP_SID": "APtest123456789",
        "OPENAI_API_KEY": "test_openai_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "LLM_PROVIDER": "groq",
    }

    with patch.dict(os.environ, env_vars):
        from src.voicegate.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeTransport:
    """Records outbound Twilio frames as parsed dicts."""

    def __init__(self, fail_after: Optional[int] = None):
        self.messages: List[Dict] = []
        self.fail_after = fail_after

    async def send(self, message: str) -> None:
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise TransportError("socket gone")
        self.messages.append(json.loads(message))

    def events(self, kind: str) -> List[Dict]:
        return [m for m in self.messages if m["event"] == kind]

    def marks(self) -> List[str]:
        return [m["mark"]["name"] for m in self.events("mark")]

    def kinds(self) -> List[str]:
        return [m["event"] for m in self.messages]


class FakeSynthesizer:
    """Returns `frames` frames of audio for any text."""

    def __init__(self, frames: int = 3, error: Optional[Exception] = None):
        self.frames = frames
        self.error = error
        self.calls: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return b"\x7f" * (160 * self.frames)


class FakePipeline:
    """Answers every utterance with `reply` (or nothing when reply is None)."""

    def __init__(self, reply: Optional[str] = "Sure, I can help with that.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.utterances: List[bytes] = []

    async def process_utterance(self, context, audio, on_response, on_event) -> None:
        self.utterances.append(audio)
        if self.error is not None:
            raise self.error
        if self.reply is not None:
            await on_response(self.reply)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def thresholds():
    """Small thresholds so tests can drive endpointing with a handful of chunks."""
    return VoiceActivityThresholds(
        silence_threshold=500,
        silence_chunks_to_end_utterance=3,
        min_total_chunks=5,
        min_active_chunks=2,
        interrupt_threshold=800,
        interrupt_chunk_count=3,
        interrupt_cooldown_ms=1000,
        playback_buffer_ms=200,
    )


@pytest.fixture
def call_context():
    return CallContext(call_sid="CA789012", stream_sid="MZ123456", assistant_type="general", caller="+15550002222")


def media_frame(seq: int, payload: bytes = QUIET, stream_sid: str = "MZ123456") -> str:
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "sequenceNumber": str(seq),
        "media": {
            "track": "inbound",
            "chunk": str(seq),
            "timestamp": str(seq * 20),
            "payload": base64.b64encode(payload).decode(),
        },
    })


def start_frame(stream_sid: str = "MZ123456", call_sid: str = "CA789012", **custom) -> str:
    return json.dumps({
        "event": "start",
        "streamSid": stream_sid,
        "start": {
            "callSid": call_sid,
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": custom,
        },
    })


def mark_frame(name: str, stream_sid: str = "MZ123456") -> str:
    return json.dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


def stop_frame(stream_sid: str = "MZ123456") -> str:
    return json.dumps({"event": "stop", "streamSid": stream_sid, "stop": {"callSid": "CA789012"}})


def dtmf_frame(digit, stream_sid: str = "MZ123456") -> str:
    return json.dumps({"event": "dtmf", "streamSid": stream_sid, "dtmf": {"track": "inbound_track", "digit": digit}})
