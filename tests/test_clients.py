"""
Tests for the OpenAI-backed speech and chat clients, with the SDK mocked out.
"""

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from src.voicegate.audio import write_wav_mono_pcm16
from src.voicegate.config import get_config
from src.voicegate.llm import FALLBACK_REPLY, ConversationHistory, ResponseGenerator, get_system_prompt
from src.voicegate.stt import OpenAITranscriber
from src.voicegate.tts import TTSManager
from src.voicegate.tts_providers.base import TTSChunk, TTSError, TTSProvider
from src.voicegate.tts_providers.openai_tts import OpenAITTS


def _chat_stream(*parts):
    async def stream():
        for text in parts:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])
    return stream()


def _chat_client(*parts):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_chat_stream(*parts))
    return client


class TestTranscriber:
    @pytest.mark.asyncio
    async def test_sends_wav_and_strips_text(self):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text="  book a table  "))
        transcriber = OpenAITranscriber(get_config(), client=client)

        result = await transcriber.transcribe(b"\xff" * 1600)

        assert result.text == "book a table"
        assert result.audio_ms == 200.0
        kwargs = client.audio.transcriptions.create.await_args.kwargs
        assert kwargs["model"] == "whisper-1"
        name, wav, mime = kwargs["file"]
        assert name == "utterance.wav"
        assert wav.startswith(b"RIFF")
        assert mime == "audio/wav"
        assert transcriber.metrics.total_transcripts == 1

    @pytest.mark.asyncio
    async def test_empty_audio_skips_request(self):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock()
        transcriber = OpenAITranscriber(get_config(), client=client)

        result = await transcriber.transcribe(b"")

        assert result.text == ""
        client.audio.transcriptions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(side_effect=RuntimeError("rate limited"))
        transcriber = OpenAITranscriber(get_config(), client=client)

        with pytest.raises(RuntimeError):
            await transcriber.transcribe(b"\xff" * 160)


class TestResponseGenerator:
    @pytest.mark.asyncio
    async def test_generate_joins_stream(self):
        client = _chat_client("Sure", ", for how many", " people? ")
        generator = ResponseGenerator(get_config(), client=client)

        response = await generator.generate("CA1", "A table please", assistant_name="Restaurant")

        assert response.text == "Sure, for how many people?"
        assert response.tokens_generated == 3
        messages = client.chat.completions.create.await_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": get_system_prompt("Restaurant")}
        assert messages[-1] == {"role": "user", "content": "A table please"}
        assert len(generator.history("CA1")) == 2

    @pytest.mark.asyncio
    async def test_history_is_per_call(self):
        generator = ResponseGenerator(get_config(), client=_chat_client("Hi"))
        await generator.generate("CA1", "hello")

        assert len(generator.history("CA1")) == 2
        assert len(generator.history("CA2")) == 0

        generator.forget("CA1")
        assert len(generator.history("CA1")) == 0

    @pytest.mark.asyncio
    async def test_failure_yields_fallback(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("503"))
        generator = ResponseGenerator(get_config(), client=client)

        response = await generator.generate("CA1", "hello")

        assert response.text == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_openai_provider(self):
        config = replace(get_config(), llm_provider="openai", openai_model="gpt-4o-mini")
        generator = ResponseGenerator(config, client=_chat_client("ok"))

        assert generator.model == "gpt-4o-mini"
        assert await generator.validate_model() is True

    def test_groq_provider_uses_groq_model(self):
        generator = ResponseGenerator(get_config(), client=MagicMock())

        assert generator.provider == "groq"
        assert generator.model == "llama-3.3-70b-versatile"

    def test_history_window(self):
        history = ConversationHistory(max_turns=1)
        history.add_user_message("one")
        history.add_assistant_message("two")
        history.add_user_message("three")

        assert [m["content"] for m in history.get_messages()] == ["two", "three"]


class EmptyProvider(TTSProvider):
    async def synthesize_streaming(self, text, *, voice_id=None):
        yield TTSChunk(audio_bytes=b"", is_final=True)


class TestTTS:
    def _client(self, content=None, error=None):
        client = MagicMock()
        if error is not None:
            client.audio.speech.create.side_effect = error
        else:
            client.audio.speech.create.return_value = SimpleNamespace(content=content)
        return client

    @pytest.mark.asyncio
    async def test_wav_is_converted_to_mulaw(self):
        wav = write_wav_mono_pcm16(np.zeros(480, dtype="<i2").tobytes(), 24000)
        client = self._client(content=wav)
        manager = TTSManager(get_config(), provider=OpenAITTS(get_config(), client=client))

        audio = await manager.synthesize("Hello")

        assert audio == b"\xff" * 160
        kwargs = client.audio.speech.create.call_args.kwargs
        assert kwargs["response_format"] == "wav"
        assert kwargs["voice"] == "alloy"
        assert kwargs["input"] == "Hello"

    @pytest.mark.asyncio
    async def test_provider_error_becomes_tts_error(self):
        client = self._client(error=RuntimeError("quota"))
        manager = TTSManager(get_config(), provider=OpenAITTS(get_config(), client=client))

        with pytest.raises(TTSError):
            await manager.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_garbage_audio_becomes_tts_error(self):
        client = self._client(content=b"not a wav file")
        manager = TTSManager(get_config(), provider=OpenAITTS(get_config(), client=client))

        with pytest.raises(TTSError):
            await manager.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_no_audio_is_an_error(self):
        manager = TTSManager(get_config(), provider=EmptyProvider())

        with pytest.raises(TTSError):
            await manager.synthesize("Hello")

    @pytest.mark.asyncio
    async def test_blank_text_is_silent(self):
        client = self._client(content=b"")
        manager = TTSManager(get_config(), provider=OpenAITTS(get_config(), client=client))

        assert await manager.synthesize("   ") == b""
        client.audio.speech.create.assert_not_called()
