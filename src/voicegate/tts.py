from __future__ import annotations

from typing import Any, List, Optional

import structlog

from src.voicegate.config import get_config
from src.voicegate.tts_providers.base import TTSError, TTSProvider
from src.voicegate.tts_providers.openai_tts import OpenAITTS

logger = structlog.get_logger(__name__)


class TTSManager:
    """
    Speech synthesis for the playback sequencer.

    `synthesize(text)` drains the provider and returns the whole utterance as
    8kHz mu-law; the sequencer does its own framing. The provider is created on
    first use (OpenAI unless one is injected).
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider

    @property
    def provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = OpenAITTS(self.config)
        return self._provider

    async def synthesize(self, text: str) -> bytes:
        """
        Raises:
            TTSError: the provider failed, or returned no audio for non-blank text
        """
        parts: List[bytes] = []
        async for chunk in self.provider.synthesize_streaming(text):
            if chunk.audio_bytes:
                parts.append(chunk.audio_bytes)

        audio = b"".join(parts)
        if not audio and text.strip():
            raise TTSError("TTS produced no audio")
        logger.debug("TTS synthesized", chars=len(text), audio_bytes=len(audio))
        return audio

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
            self._provider = None
