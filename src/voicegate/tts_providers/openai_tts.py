from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Optional

import structlog

from src.voicegate.audio import wav_bytes_to_ulaw
from src.voicegate.config import get_config
from src.voicegate.tts_providers.base import TTSChunk, TTSError, TTSProvider

logger = structlog.get_logger(__name__)


def _response_bytes(response: Any) -> bytes:
    content = getattr(response, "content", None)
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    if callable(getattr(response, "read", None)):
        return response.read()
    return bytes(response)


class OpenAITTS(TTSProvider):
    """
    OpenAI speech endpoint, one request per utterance.

    The sync SDK call runs in a worker thread; the returned WAV is resampled to
    8kHz mu-law and yielded as a single final chunk.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client
        self._request: Optional[asyncio.Task] = None

    @property
    def client(self) -> Any:
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=self.config.openai_api_key)
        return self._client

    def cancel(self) -> None:
        if self._request is not None and not self._request.done():
            self._request.cancel()

    def _fetch_wav(self, text: str, voice: str) -> bytes:
        response = self.client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=voice,
            input=text,
            response_format="wav",
        )
        return _response_bytes(response)

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        voice = voice_id or self.config.openai_tts_voice
        request = asyncio.create_task(asyncio.to_thread(self._fetch_wav, text, voice))
        self._request = request
        try:
            wav_bytes = await request
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS request failed", voice=voice, chars=len(text), error=str(e))
            raise TTSError(f"OpenAI TTS failed: {e}") from e
        finally:
            if self._request is request:
                self._request = None

        try:
            ulaw = wav_bytes_to_ulaw(wav_bytes)
        except ValueError as e:
            raise TTSError(f"Unusable TTS audio: {e}") from e

        logger.debug("OpenAI TTS audio ready", voice=voice, ulaw_bytes=len(ulaw))
        yield TTSChunk(audio_bytes=ulaw, is_final=True)
