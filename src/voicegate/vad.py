"""
Voice activity thresholds for amplitude-based endpointing and barge-in.

All values are compared against the mean absolute amplitude of one decoded
inbound chunk (see `src.voicegate.audio.average_amplitude`).
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class VoiceActivityThresholds:
    """Endpointing and interrupt sensitivity for one call."""

    # Chunks quieter than this count as silence.
    silence_threshold: int = 500
    # Consecutive silent chunks that close an utterance.
    silence_chunks_to_end_utterance: int = 50
    # Minimum buffered chunks before an utterance may be finalized.
    min_total_chunks: int = 40
    # Minimum loud chunks (guards against closing on pure silence).
    min_active_chunks: int = 10
    # Chunks at or above this count towards barge-in while the assistant speaks.
    interrupt_threshold: int = 800
    # Consecutive loud chunks during playback required to declare barge-in.
    interrupt_chunk_count: int = 3
    # Minimum time between two barge-in declarations.
    interrupt_cooldown_ms: int = 1000
    # Barge-in detection is suppressed this long after playback starts (echo/line noise).
    playback_buffer_ms: int = 200

    def __post_init__(self) -> None:
        if self.interrupt_threshold <= self.silence_threshold:
            raise ValueError(
                f"interrupt_threshold ({self.interrupt_threshold}) must be greater than "
                f"silence_threshold ({self.silence_threshold})"
            )
        for name in (
            "silence_chunks_to_end_utterance",
            "min_total_chunks",
            "min_active_chunks",
            "interrupt_chunk_count",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.interrupt_cooldown_ms < 0 or self.playback_buffer_ms < 0:
            raise ValueError("interrupt_cooldown_ms and playback_buffer_ms must not be negative")

    def is_active(self, amplitude: float) -> bool:
        return amplitude >= self.silence_threshold

    def is_interrupt(self, amplitude: float) -> bool:
        return amplitude >= self.interrupt_threshold

    def should_finalize(self, silence_run: int, active_run: int, total_chunks: int) -> bool:
        """Whether a listening buffer holds a complete utterance."""
        return (
            silence_run >= self.silence_chunks_to_end_utterance
            and active_run >= self.min_active_chunks
            and total_chunks >= self.min_total_chunks
        )
