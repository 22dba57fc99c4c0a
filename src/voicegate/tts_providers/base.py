from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional


class TTSError(Exception):
    """Raised when a provider cannot synthesize speech."""
    pass


@dataclass
class TTSChunk:
    """Twilio-ready 8kHz mu-law audio from a provider."""

    audio_bytes: bytes
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)


class TTSProvider(ABC):
    """
    A speech synthesizer.

    Implementations yield mu-law chunks for `text` and raise `TTSError` when the
    backend fails. `cancel()` aborts an in-flight request.
    """

    @abstractmethod
    def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        ...

    def cancel(self) -> None:
        pass

    async def close(self) -> None:
        self.cancel()
