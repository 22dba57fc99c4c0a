"""
Tests for voice activity thresholds and stream session bookkeeping.
"""

import pytest

from src.voicegate.session import CallContext, StreamSession
from src.voicegate.twilio_protocol import TwilioMediaEvent
from src.voicegate.vad import VoiceActivityThresholds


def _media(seq=None, chunk=None):
    return TwilioMediaEvent(
        stream_sid="MZ1", sequence_number=seq, track="inbound", chunk=chunk, timestamp="", payload=b"\xff"
    )


class TestThresholds:
    def test_defaults(self):
        t = VoiceActivityThresholds()

        assert t.silence_threshold == 500
        assert t.silence_chunks_to_end_utterance == 50
        assert t.min_total_chunks == 40
        assert t.min_active_chunks == 10
        assert t.interrupt_threshold == 800
        assert t.interrupt_chunk_count == 3
        assert t.interrupt_cooldown_ms == 1000
        assert t.playback_buffer_ms == 200

    def test_interrupt_must_exceed_silence(self):
        with pytest.raises(ValueError):
            VoiceActivityThresholds(silence_threshold=800, interrupt_threshold=800)

    def test_counts_must_be_positive(self):
        with pytest.raises(ValueError):
            VoiceActivityThresholds(interrupt_chunk_count=0)

    def test_negative_durations_rejected(self):
        with pytest.raises(ValueError):
            VoiceActivityThresholds(playback_buffer_ms=-5)

    def test_boundaries_are_inclusive(self):
        t = VoiceActivityThresholds()

        assert t.is_active(500)
        assert not t.is_active(499.9)
        assert t.is_interrupt(800)
        assert not t.is_interrupt(799)

    def test_should_finalize_needs_all_three(self):
        t = VoiceActivityThresholds()

        assert t.should_finalize(silence_run=50, active_run=10, total_chunks=40)
        assert not t.should_finalize(silence_run=49, active_run=10, total_chunks=40)
        assert not t.should_finalize(silence_run=50, active_run=9, total_chunks=40)
        assert not t.should_finalize(silence_run=50, active_run=10, total_chunks=39)


class TestCallContext:
    @pytest.mark.parametrize("kind,name", [
        ("general", "General AI"),
        ("", "AI"),
        ("restaurant", "Restaurant"),
        ("car_dealer", "Car Dealer"),
    ])
    def test_assistant_name(self, kind, name):
        assert CallContext(call_sid="CA1", stream_sid="MZ1", assistant_type=kind).assistant_name == name


class TestStreamSession:
    def _session(self):
        return StreamSession(context=CallContext(call_sid="CA1", stream_sid="MZ1"), transport=None)

    def test_markers_are_unique(self):
        s = self._session()
        first = s.next_marker("response")
        second = s.next_marker("response")

        assert first != second
        assert first.startswith("response_")
        assert second.endswith("_2")

    def test_sequence_prefers_sequence_number(self):
        s = self._session()
        assert s.sequence_for(_media(seq=7, chunk=3)) == 7

    def test_sequence_falls_back_to_chunk_then_counter(self):
        s = self._session()

        assert s.sequence_for(_media(chunk=5)) == 5
        assert s.sequence_for(_media()) == 6
        assert s.sequence_for(_media()) == 7

    def test_take_utterance_orders_and_clears(self):
        s = self._session()
        s.chunk_buffer[3] = b"c"
        s.chunk_buffer[1] = b"a"
        s.barge_in_buffer[2] = b"b"

        assert s.take_utterance() == b"abc"
        assert s.chunk_buffer == {}
        assert s.barge_in_buffer == {}

    def test_listening_chunk_wins_collision(self):
        s = self._session()
        s.barge_in_buffer[1] = b"old"
        s.chunk_buffer[1] = b"new"

        assert s.take_utterance() == b"new"
