"""
Twilio Media Streams frames.

Inbound (JSON text frames): `connected`, `start` (stream and call sids plus the
TwiML <Parameter> values), `media` (base64 8kHz mu-law, string sequence
numbers), `mark` (echo of a mark we sent, once the audio before it has played),
`dtmf` (digit as string or number) and `stop`.

Outbound: `media` frames with our audio, `mark` to learn when playback reached a
point, `clear` to drop whatever Twilio still has buffered.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

OUTBOUND_TRACK = "outbound_track"


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


class UnknownEventError(ValueError):
    """Raised for well-formed frames whose `event` is not a Media Streams event."""
    pass


class DtmfDigit(str, Enum):
    """Keypad digits Twilio can report."""
    ZERO = "0"
    ONE = "1"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    FIVE = "5"
    SIX = "6"
    SEVEN = "7"
    EIGHT = "8"
    NINE = "9"
    STAR = "*"
    POUND = "#"


def normalize_dtmf_digit(value: Union[str, int, float, None]) -> Optional[DtmfDigit]:
    """
    Normalize a raw DTMF value into a DtmfDigit.

    Accepts "1", 1, 1.0, " 1 " and the first character of multi-digit strings.
    Returns None for anything that is not a keypad digit.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return DtmfDigit(text[0])
    except ValueError:
        return None


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    """The `key` object of a frame; missing means empty, any other non-object is malformed."""
    value = message.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Invalid {key!r} frame: expected a JSON object, got {type(value).__name__}")
    return value


@dataclass
class TwilioStartEvent:
    """`start` frame."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    media_format: Dict[str, Any] = field(default_factory=dict)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def assistant_type(self) -> Optional[str]:
        value = self.custom_parameters.get("assistantType")
        return str(value) if value else None

    @property
    def caller(self) -> Optional[str]:
        value = self.custom_parameters.get("caller")
        return str(value) if value else None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = _section(message, "start")
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            media_format=start.get("mediaFormat") or {},
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    """`media` frame."""
    stream_sid: str
    sequence_number: Optional[int]
    track: str
    chunk: Optional[int]
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = _section(message, "media")
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, TypeError, ValueError):
            logger.warning("Undecodable media payload", stream_sid=message.get("streamSid"))
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            sequence_number=_parse_int(message.get("sequenceNumber")),
            track=media.get("track", "inbound"),
            chunk=_parse_int(media.get("chunk")),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """`mark` frame."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = _section(message, "mark")
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event. `digit` is None when the raw value was not a keypad digit."""
    stream_sid: str
    digit: Optional[DtmfDigit]
    raw: Any = None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf")
        if isinstance(dtmf, dict):
            raw = dtmf.get("digits")
            if raw is None:
                raw = dtmf.get("digit")
        else:
            # Some senders put the digit directly under `dtmf`
            raw = dtmf
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=normalize_dtmf_digit(raw),
            raw=raw,
        )


@dataclass
class TwilioStopEvent:
    """`stop` frame."""
    stream_sid: str
    call_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = _section(message, "stop")
        return cls(
            stream_sid=message.get("streamSid") or stop.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


_PARSERS = {
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.MARK: TwilioMarkEvent.from_message,
    TwilioEventType.DTMF: TwilioDTMFEvent.from_message,
    TwilioEventType.STOP: TwilioStopEvent.from_message,
}


def parse_twilio_message(raw_message: Union[str, bytes]) -> Tuple[TwilioEventType, Any]:
    """
    Decode one inbound WebSocket frame.

    Returns (event_type, event). `connected` frames come back as the raw dict,
    every other event as its dataclass.

    Raises:
        UnknownEventError: well-formed frame with an event we don't handle
        ValueError: not JSON, or not a JSON object
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        message = decoder.decode(data)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    name = message.get("event", "")
    try:
        event_type = TwilioEventType(name)
    except ValueError:
        raise UnknownEventError(f"Unknown event type: {name!r}") from None

    parser = _PARSERS.get(event_type)
    return event_type, (parser(message) if parser else message)


def _encode(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
    chunk: Optional[int] = None,
    timestamp_ms: Optional[int] = None,
) -> str:
    """
    Outbound `media` frame for one 20ms slice of mu-law audio.

    `chunk` and `timestamp_ms` locate the frame within its playback and are
    sent as strings, like Twilio's own inbound frames.
    """
    media: Dict[str, Any] = {
        "track": OUTBOUND_TRACK,
        "payload": base64.b64encode(audio_payload).decode("ascii"),
    }
    if chunk is not None:
        media["chunk"] = str(chunk)
    if timestamp_ms is not None:
        media["timestamp"] = str(timestamp_ms)
    return _encode({"event": "media", "streamSid": stream_sid, "media": media})


def create_mark_message(stream_sid: str, name: str) -> str:
    """Outbound `mark`; Twilio echoes it once everything queued before it has played."""
    return _encode({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


def create_clear_message(stream_sid: str) -> str:
    """Outbound `clear`; drops audio Twilio has buffered but not yet played."""
    return _encode({"event": "clear", "streamSid": stream_sid})
