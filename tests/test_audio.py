"""
Tests for audio conversion utilities.
"""

import io
import wave

import pytest
import numpy as np

from src.voicegate.audio import (
    MULAW_DECODE_TABLE,
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
    average_amplitude,
    chunk_audio,
    decode_mulaw,
    encode_mulaw,
    get_audio_duration_ms,
    mulaw_average_amplitude,
    read_wav_mono_pcm16,
    resample_pcm16,
    ulaw_to_linear16,
    ulaw_to_wav_bytes,
    wav_bytes_to_ulaw,
    write_wav_mono_pcm16,
)


class TestMulawDecoding:
    """Tests for the mu-law lookup table."""

    def test_table_shape(self):
        assert MULAW_DECODE_TABLE.shape == (256,)
        assert MULAW_DECODE_TABLE.dtype == np.int16

    def test_table_is_read_only(self):
        with pytest.raises(ValueError):
            MULAW_DECODE_TABLE[0] = 1

    def test_known_values(self):
        """0xFF is silence, 0x00 and 0x80 are the loudest codes."""
        assert MULAW_DECODE_TABLE[0xFF] == 0
        assert MULAW_DECODE_TABLE[0x00] == -32124
        assert MULAW_DECODE_TABLE[0x80] == 32124

    def test_sign_bit_mirrors_every_code(self):
        for code in range(0x80):
            assert int(MULAW_DECODE_TABLE[code]) == -int(MULAW_DECODE_TABLE[code | 0x80]), hex(code)

    def test_decode_empty(self):
        assert decode_mulaw(b"").size == 0

    def test_decode_one_sample_per_byte(self):
        samples = decode_mulaw(b"\xff\x00\x80")
        assert samples.tolist() == [0, -32124, 32124]


class TestAmplitude:
    """Tests for chunk loudness scoring."""

    def test_empty_is_zero(self):
        assert average_amplitude([]) == 0.0
        assert mulaw_average_amplitude(b"") == 0.0

    def test_mean_absolute_value(self):
        assert average_amplitude([-100, 100, 0, 200]) == 100.0

    def test_silence_chunk(self):
        assert mulaw_average_amplitude(b"\xff" * 160) == 0.0

    def test_loud_chunk(self):
        assert mulaw_average_amplitude(b"\x00" * 160) == 32124.0

    def test_mixed_chunk(self):
        # half silence, half full scale
        assert mulaw_average_amplitude(b"\xff\x80" * 80) == pytest.approx(16062.0)


class TestUlawConversion:
    """Tests for mu-law conversion."""

    def test_ulaw_to_linear16_empty(self):
        """Test conversion of empty bytes."""
        assert ulaw_to_linear16(b"") == b""

    def test_ulaw_to_linear16_basic(self):
        """Silence decodes to zero samples, two bytes each."""
        result = ulaw_to_linear16(b"\xff" * 100)
        assert len(result) == 200
        samples = np.frombuffer(result, dtype=np.int16)
        assert np.abs(samples).max() == 0

    def test_encode_empty(self):
        assert encode_mulaw(b"") == b""

    def test_encode_silence(self):
        assert encode_mulaw(b"\x00\x00" * 10) == b"\xff" * 10

    def test_encode_full_scale(self):
        pcm = np.array([32124, -32124, 32767, -32768], dtype="<i2").tobytes()
        assert encode_mulaw(pcm) == b"\x80\x00\x80\x00"

    def test_tone_survives_encoding(self):
        """mu-law is lossy but a tone should stay highly correlated."""
        samples = (np.sin(np.linspace(0, 4 * np.pi, 100)) * 16000).astype(np.int16)
        recovered = np.frombuffer(ulaw_to_linear16(encode_mulaw(samples.tobytes())), dtype=np.int16)
        correlation = np.corrcoef(samples, recovered)[0, 1]
        assert correlation > 0.99


class TestResampling:
    """Tests for audio resampling."""

    def test_same_rate_is_identity(self):
        pcm = np.arange(10, dtype="<i2").tobytes()
        assert resample_pcm16(pcm, 8000, 8000) == pcm

    def test_empty(self):
        assert resample_pcm16(b"", 24000, 8000) == b""

    def test_upsample_length(self):
        pcm = np.zeros(100, dtype="<i2").tobytes()
        result = resample_pcm16(pcm, 8000, 16000)
        assert len(result) // 2 == 200

    def test_downsample_length(self):
        pcm = np.zeros(2400, dtype="<i2").tobytes()
        result = resample_pcm16(pcm, 24000, 8000)
        assert len(result) // 2 == 800

    def test_constant_signal_preserved(self):
        pcm = np.full(300, 1234, dtype="<i2").tobytes()
        samples = np.frombuffer(resample_pcm16(pcm, 24000, 8000), dtype="<i2")
        assert (samples == 1234).all()


class TestChunking:
    """Tests for audio chunking."""

    def test_frame_size(self):
        assert TWILIO_SAMPLE_RATE == 8000
        assert TWILIO_FRAME_SIZE == 160

    def test_exact_multiple(self):
        chunks = list(chunk_audio(b"\x01" * 320))
        assert len(chunks) == 2
        assert all(len(c) == 160 for c in chunks)

    def test_last_chunk_padded_with_silence(self):
        chunks = list(chunk_audio(b"\x01" * 200))
        assert len(chunks) == 2
        assert chunks[1] == b"\x01" * 40 + b"\xff" * 120

    def test_empty(self):
        assert list(chunk_audio(b"")) == []

    def test_custom_size(self):
        assert list(chunk_audio(b"\x01" * 10, chunk_size=4)) == [b"\x01" * 4, b"\x01" * 4, b"\x01\x01\xff\xff"]


class TestDuration:
    def test_ulaw_duration(self):
        assert get_audio_duration_ms(b"\xff" * 8000) == 1000.0

    def test_pcm_duration(self):
        assert get_audio_duration_ms(b"\x00" * 320, is_ulaw=False) == 20.0

    def test_empty(self):
        assert get_audio_duration_ms(b"") == 0.0


class TestWav:
    """Tests for the WAV helpers used by STT and TTS."""

    def test_ulaw_to_wav(self):
        wav_bytes = ulaw_to_wav_bytes(b"\xff" * 160)
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getframerate() == 8000
            assert wf.getnframes() == 160

    def test_wav_to_ulaw_resamples(self):
        wav_bytes = write_wav_mono_pcm16(np.zeros(320, dtype="<i2").tobytes(), 16000)
        assert wav_bytes_to_ulaw(wav_bytes) == b"\xff" * 160

    def test_stereo_is_downmixed(self):
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(2)
            wf.setsampwidth(2)
            wf.setframerate(8000)
            wf.writeframes(np.array([100, 300, -50, -150], dtype="<i2").tobytes())

        rate, pcm = read_wav_mono_pcm16(buf.getvalue())

        assert rate == 8000
        assert np.frombuffer(pcm, dtype="<i2").tolist() == [200, -100]

    def test_rejects_8bit(self):
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(1)
            wf.setframerate(8000)
            wf.writeframes(b"\x80" * 10)

        with pytest.raises(ValueError):
            read_wav_mono_pcm16(buf.getvalue())

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            read_wav_mono_pcm16(b"")
