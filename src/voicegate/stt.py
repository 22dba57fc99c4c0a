"""
OpenAI Speech-to-Text for finished utterances.

Endpointing happens in the call session, so transcription is a single request
per utterance: mu-law 8kHz is wrapped as a PCM16 WAV file and posted to the
OpenAI transcription endpoint.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.voicegate.audio import get_audio_duration_ms, ulaw_to_wav_bytes
from src.voicegate.config import get_config

logger = structlog.get_logger(__name__)


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    audio_ms: float = 0.0
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    empty_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, audio_ms: float, latency_ms: float, empty: bool) -> None:
        self.total_audio_ms += audio_ms
        self.total_transcripts += 1
        if empty:
            self.empty_transcripts += 1
        self.avg_latency_ms = (
            (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
            / self.total_transcripts
        )


class OpenAITranscriber:
    """Batch transcription client shared by all calls."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client
        self._metrics = STTMetrics()

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def transcribe(self, ulaw_audio: bytes, language: Optional[str] = None) -> TranscriptionResult:
        """
        Transcribe one utterance of 8kHz mu-law audio.

        Raises whatever the OpenAI client raises; callers decide how to report it.
        """
        audio_ms = get_audio_duration_ms(ulaw_audio)
        if not ulaw_audio:
            return TranscriptionResult(text="", audio_ms=0.0)

        start = time.perf_counter()
        kwargs: dict[str, Any] = {
            "model": self.config.openai_stt_model,
            "file": ("utterance.wav", ulaw_to_wav_bytes(ulaw_audio), "audio/wav"),
        }
        if language:
            kwargs["language"] = language

        response = await self.client.audio.transcriptions.create(**kwargs)
        text = (getattr(response, "text", None) or "").strip()
        latency_ms = (time.perf_counter() - start) * 1000

        self._metrics.record_transcript(audio_ms, latency_ms, empty=not text)
        logger.info(
            "Utterance transcribed",
            audio_ms=round(audio_ms),
            latency_ms=round(latency_ms, 1),
            chars=len(text),
        )
        return TranscriptionResult(text=text, audio_ms=audio_ms, latency_ms=latency_ms)
