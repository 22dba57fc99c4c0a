"""
Per-stream session state.

`StreamSession` is plain data owned by exactly one `CallSession` actor; nothing
else mutates it (the playback task only stamps `playback_started_at`).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from src.voicegate.twilio_protocol import TwilioMediaEvent


class SessionPhase(str, Enum):
    AWAITING_WELCOME = "awaiting_welcome"
    LISTENING = "listening"
    PROCESSING_UTTERANCE = "processing_utterance"
    PLAYING = "playing"


@dataclass(frozen=True)
class CallContext:
    """Immutable per-call values handed to the processing pipeline."""

    call_sid: str
    stream_sid: str
    assistant_type: str = "general"
    caller: Optional[str] = None
    thread_id: Optional[str] = None

    @property
    def assistant_name(self) -> str:
        """Spoken assistant name, e.g. "General AI" or "Restaurant"."""
        kind = (self.assistant_type or "").strip()
        if not kind:
            return "AI"
        if kind.lower() == "general":
            return "General AI"
        return " ".join(part.capitalize() for part in kind.replace("_", " ").replace("-", " ").split())


@dataclass
class StreamSession:
    """Mutable state of one Twilio media stream."""

    context: CallContext
    transport: Any

    phase: SessionPhase = SessionPhase.AWAITING_WELCOME

    # Sequence number -> mu-law bytes
    chunk_buffer: Dict[int, bytes] = field(default_factory=dict)
    barge_in_buffer: Dict[int, bytes] = field(default_factory=dict)

    silence_run: int = 0
    active_run: int = 0

    # Milliseconds on the session clock
    playback_started_at: float = 0.0
    last_interrupt_at: Optional[float] = None
    consecutive_loud_chunks: int = 0

    pending_ack_marker: Optional[str] = None
    interrupted: bool = False

    welcome_active: bool = False
    initial_media: List[TwilioMediaEvent] = field(default_factory=list)

    utterance_id: int = 0
    marker_counter: int = 0
    last_sequence_number: int = 0

    @property
    def stream_sid(self) -> str:
        return self.context.stream_sid

    @property
    def call_sid(self) -> str:
        return self.context.call_sid

    def next_marker(self, prefix: str) -> str:
        """Unique mark name for one playback attempt."""
        self.marker_counter += 1
        return f"{prefix}_{time.monotonic_ns()}_{self.marker_counter}"

    def sequence_for(self, event: TwilioMediaEvent) -> int:
        """
        Sequence number of an inbound chunk.

        Falls back to `media.chunk` and then to a local counter when Twilio omits it.
        """
        seq = event.sequence_number
        if seq is None:
            seq = event.chunk
        if seq is None:
            seq = self.last_sequence_number + 1
        self.last_sequence_number = max(self.last_sequence_number, seq)
        return seq

    def reset_counters(self) -> None:
        self.silence_run = 0
        self.active_run = 0

    def take_utterance(self) -> bytes:
        """
        Merge barge-in leftovers with the listening buffer and clear both.

        Barge-in chunks go in first; listening chunks overwrite them on a sequence
        collision. The result is ordered by sequence number.
        """
        merged: Dict[int, bytes] = dict(self.barge_in_buffer)
        merged.update(self.chunk_buffer)
        self.barge_in_buffer.clear()
        self.chunk_buffer.clear()
        return b"".join(merged[seq] for seq in sorted(merged))
