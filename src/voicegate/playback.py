"""
Playback sequencer for outbound speech.

Synthesized mu-law audio is split into 20ms frames and sent at real-time pace.
After the last frame a uniquely named `mark` is sent; Twilio echoes it back once
playout finishes, which is how the call session learns the assistant stopped
talking. A stop request halts transmission before the next frame and flushes
Twilio's buffer with a `clear` message.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union

import structlog

from src.voicegate.audio import FRAME_DURATION_MS, TWILIO_FRAME_SIZE, chunk_audio
from src.voicegate.transport import TransportError
from src.voicegate.twilio_protocol import (
    create_clear_message,
    create_mark_message,
    create_media_message,
)

logger = structlog.get_logger(__name__)


class PlaybackOutcome(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


class Synthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes:
        ...


class Transport(Protocol):
    async def send(self, message: str) -> None:
        ...


@dataclass
class _Playback:
    marker_name: str
    stopped: bool = False
    frames_sent: int = 0


class PlaybackSequencer:
    """
    Streams audio for one media stream.

    At most one playback is active at a time. A playback stays active from
    `play()` until its end mark is acknowledged (`acknowledge()`) or it is stopped.
    """

    def __init__(
        self,
        transport: Transport,
        stream_sid: str,
        synthesizer: Optional[Synthesizer] = None,
        frame_size: int = TWILIO_FRAME_SIZE,
        frame_interval_ms: int = FRAME_DURATION_MS,
        restart_delay_ms: int = 100,
    ):
        self.transport = transport
        self.stream_sid = stream_sid
        self.synthesizer = synthesizer
        self.frame_size = frame_size
        self.frame_interval_ms = frame_interval_ms
        self.restart_delay_ms = restart_delay_ms
        self._active: Optional[_Playback] = None
        self._log = logger.bind(stream_sid=stream_sid)

    @property
    def is_active(self) -> bool:
        return self._active is not None and not self._active.stopped

    @property
    def active_marker(self) -> Optional[str]:
        return self._active.marker_name if self.is_active else None

    def acknowledge(self, marker_name: str) -> bool:
        """Mark the playback owning `marker_name` as finished."""
        if self._active is not None and self._active.marker_name == marker_name:
            self._active = None
            return True
        return False

    def halt(self) -> None:
        """Stop transmitting without telling Twilio (the stream is already gone)."""
        if self._active is not None:
            self._active.stopped = True
            self._active = None

    async def stop(self) -> None:
        """
        Stop the active playback.

        Sets the stop flag (checked before every frame), flushes Twilio's buffer
        and sends a `stop_playback_<ns>` mark.
        """
        playback = self._active
        self.halt()
        await self._send_stop(playback)

    async def _send_stop(self, playback: Optional[_Playback]) -> None:
        try:
            await self.transport.send(create_clear_message(self.stream_sid))
            stop_marker = f"stop_playback_{time.monotonic_ns()}"
            await self.transport.send(create_mark_message(self.stream_sid, stop_marker))
            self._log.info(
                "Playback stopped",
                marker=playback.marker_name if playback else None,
                frames_sent=playback.frames_sent if playback else 0,
                stop_marker=stop_marker,
            )
        except TransportError as e:
            self._log.warning("Failed to send playback stop", error=str(e))

    async def play(
        self,
        source: Union[str, bytes],
        marker_name: str,
        on_started: Optional[Callable[[], Any]] = None,
    ) -> PlaybackOutcome:
        """
        Play text (synthesized first) or raw mu-law bytes.

        Returns COMPLETED once the end mark was sent, INTERRUPTED when stopped
        mid-way, FAILED on synthesis or transport errors.
        """
        previous = self._active if self.is_active else None
        playback = _Playback(marker_name=marker_name)
        self._active = playback

        try:
            if previous is not None:
                # A stop() during the restart wait flags the new playback.
                self._log.info("Stopping current playback before starting a new one", previous=previous.marker_name)
                previous.stopped = True
                await self._send_stop(previous)
                if self.restart_delay_ms > 0:
                    await asyncio.sleep(self.restart_delay_ms / 1000)
                if playback.stopped:
                    return PlaybackOutcome.INTERRUPTED

            if isinstance(source, (bytes, bytearray)):
                audio = bytes(source)
            else:
                if self.synthesizer is None:
                    raise RuntimeError("No synthesizer configured for text playback")
                audio = await self.synthesizer.synthesize(source)

            if playback.stopped:
                return PlaybackOutcome.INTERRUPTED

            if on_started is not None:
                on_started()

            interval = self.frame_interval_ms / 1000
            for frame in chunk_audio(audio, self.frame_size):
                if playback.stopped:
                    self._log.info("Playback interrupted", marker=marker_name, frames_sent=playback.frames_sent)
                    return PlaybackOutcome.INTERRUPTED

                await self.transport.send(
                    create_media_message(
                        self.stream_sid,
                        frame,
                        chunk=playback.frames_sent + 1,
                        timestamp_ms=playback.frames_sent * FRAME_DURATION_MS,
                    )
                )
                playback.frames_sent += 1
                if interval > 0:
                    await asyncio.sleep(interval)

            if playback.stopped:
                return PlaybackOutcome.INTERRUPTED

            await self.transport.send(create_mark_message(self.stream_sid, marker_name))
            self._log.debug("Playback sent", marker=marker_name, frames_sent=playback.frames_sent)
            return PlaybackOutcome.COMPLETED

        except TransportError as e:
            self._log.warning("Playback aborted: transport error", marker=marker_name, error=str(e))
            self._release(playback)
            return PlaybackOutcome.FAILED
        except asyncio.CancelledError:
            self._release(playback)
            raise
        except Exception as e:
            self._log.error("Playback aborted: synthesis failed", marker=marker_name, error=str(e))
            self._release(playback)
            return PlaybackOutcome.FAILED

    def _release(self, playback: _Playback) -> None:
        playback.stopped = True
        if self._active is playback:
            self._active = None
