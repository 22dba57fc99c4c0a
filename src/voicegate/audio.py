"""
Audio codec utilities for the Twilio Voice Gateway.

Twilio Media Streams carry 8kHz mono G.711 mu-law in both directions:
- Inbound chunks are decoded through a 256-entry lookup table and scored by
  average amplitude (the only loudness signal used for endpointing/barge-in).
- Synthesized speech is converted to 8kHz mu-law and split into 20ms frames.

`audioop` is gone from current Python releases, so conversions are done with numpy.
"""

import io
import wave
from typing import Generator, Sequence, Tuple, Union

import numpy as np

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = TWILIO_SAMPLE_RATE * FRAME_DURATION_MS // 1000
MULAW_SILENCE = 0xFF

_MULAW_BIAS = 0x84
_MULAW_CLIP = 32635


def _build_decode_table() -> np.ndarray:
    """Build the G.711 mu-law expansion table (sign bit, 3-bit exponent, 4-bit mantissa)."""
    table = np.zeros(256, dtype=np.int16)
    for i in range(256):
        u = ~i & 0xFF
        exponent = (u >> 4) & 0x07
        mantissa = u & 0x0F
        magnitude = ((mantissa << 3) + _MULAW_BIAS) << exponent
        table[i] = (_MULAW_BIAS - magnitude) if u & 0x80 else (magnitude - _MULAW_BIAS)
    table.setflags(write=False)
    return table


MULAW_DECODE_TABLE: np.ndarray = _build_decode_table()

# Segment lookup for the encoder: index is (biased magnitude >> 7), value is the exponent.
_EXPONENT_LUT = np.array(
    [0, 0, 1, 1] + [2] * 4 + [3] * 8 + [4] * 16 + [5] * 32 + [6] * 64 + [7] * 128,
    dtype=np.int32,
)


def decode_mulaw(ulaw_bytes: bytes) -> np.ndarray:
    """
    Decode mu-law bytes to 16-bit PCM samples.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        int16 numpy array, one sample per input byte
    """
    if not ulaw_bytes:
        return np.zeros(0, dtype=np.int16)
    return MULAW_DECODE_TABLE[np.frombuffer(ulaw_bytes, dtype=np.uint8)]


def average_amplitude(samples: Union[np.ndarray, Sequence[int]]) -> float:
    """Mean absolute sample value; 0.0 for empty input."""
    arr = np.asarray(samples, dtype=np.int32)
    if arr.size == 0:
        return 0.0
    return float(np.abs(arr).mean())


def mulaw_average_amplitude(ulaw_bytes: bytes) -> float:
    """Decode a mu-law chunk and return its average amplitude."""
    return average_amplitude(decode_mulaw(ulaw_bytes))


def encode_mulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit little-endian bytes

    Returns:
        Mu-law encoded bytes (half the input length)
    """
    if not pcm_bytes:
        return b""

    samples = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.int32)
    sign = np.where(samples < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(samples), _MULAW_CLIP) + _MULAW_BIAS
    exponent = _EXPONENT_LUT[magnitude >> 7]
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """Convert mu-law audio to linear PCM 16-bit little-endian bytes."""
    if not ulaw_bytes:
        return b""
    return decode_mulaw(ulaw_bytes).astype("<i2").tobytes()


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM between sample rates using linear interpolation.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes

    samples = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.float64)
    if samples.size == 0:
        return b""

    duration = samples.size / float(source_rate)
    target_count = max(1, int(round(duration * target_rate)))
    src_positions = np.arange(samples.size) / float(source_rate)
    dst_positions = np.arange(target_count) / float(target_rate)
    resampled = np.interp(dst_positions, src_positions, samples)
    return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Split mu-law audio into `chunk_size` frames (160 bytes is one 20ms frame).

    A short trailing frame is padded with mu-law silence so every frame sent to
    Twilio has the same length.
    """
    pad = bytes([MULAW_SILENCE]) * chunk_size
    for offset in range(0, len(audio_bytes), chunk_size):
        frame = audio_bytes[offset:offset + chunk_size]
        yield frame if len(frame) == chunk_size else (frame + pad)[:chunk_size]


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """Playing time of mu-law (one byte per sample) or PCM16 (two bytes) audio."""
    if not audio_bytes:
        return 0.0
    samples = len(audio_bytes) // (1 if is_ulaw else 2)
    return samples * 1000.0 / sample_rate


def read_wav_mono_pcm16(wav_bytes: bytes) -> Tuple[int, bytes]:
    """
    Parse a 16-bit WAV file into (sample_rate, mono PCM16).

    Stereo input is averaged down to one channel. Anything else that is not
    16-bit mono or stereo raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as reader:
            channels, width, rate, count = (
                reader.getnchannels(),
                reader.getsampwidth(),
                reader.getframerate(),
                reader.getnframes(),
            )
            pcm = reader.readframes(count)
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV: {e}") from e

    if width != 2:
        raise ValueError(f"Unsupported WAV sample width: {width * 8} bits")
    if channels == 1:
        return int(rate), pcm
    if channels == 2:
        pairs = np.frombuffer(pcm, dtype="<i2").astype(np.int32).reshape(-1, 2)
        return int(rate), (pairs.sum(axis=1) // 2).astype("<i2").tobytes()
    raise ValueError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def ulaw_to_wav_bytes(ulaw_bytes: bytes) -> bytes:
    """Wrap 8kHz mu-law caller audio as a PCM16 WAV file for transcription."""
    return write_wav_mono_pcm16(ulaw_to_linear16(ulaw_bytes), TWILIO_SAMPLE_RATE)


def wav_bytes_to_ulaw(wav_bytes: bytes) -> bytes:
    """Convert a PCM16 WAV byte string (any rate) into Twilio 8kHz mu-law bytes."""
    sr, pcm = read_wav_mono_pcm16(wav_bytes)
    pcm_8k = resample_pcm16(pcm, sr, TWILIO_SAMPLE_RATE)
    return encode_mulaw(pcm_8k)
