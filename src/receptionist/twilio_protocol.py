"""
Twilio Media Streams WebSocket protocol codec.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from xml.sax.saxutils import escape

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"
    UNKNOWN = "unknown"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        # Twilio puts streamSid on both the envelope and the start block.
        stream_sid = start.get("streamSid") or message.get("streamSid") or ""
        if not stream_sid:
            raise ValueError("start event without streamSid")
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid", ""),
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    payload: str  # base64 mu-law, forwarded upstream untouched

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        payload = media.get("payload")
        if not isinstance(payload, str):
            raise ValueError("media event without payload")
        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            payload=payload,
        )


def parse_twilio_message(raw_message) -> Tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string (or bytes) from Twilio

    Returns:
        Tuple of (event_type, parsed_event). Start and media events are parsed into
        dataclasses; every other event is returned as the decoded dict. Events Twilio
        may add later map to TwilioEventType.UNKNOWN.

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.debug("Unknown Twilio event type", event_type=event_type_str)
        return TwilioEventType.UNKNOWN, message

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    else:
        return event_type, message


def reencode_payload(payload_b64: str) -> str:
    """
    Decode and re-encode a base64 audio payload.

    Normalizes whatever base64 variant the realtime service emits into the canonical
    form Twilio expects.

    Raises:
        ValueError: If the payload is not valid base64
    """
    try:
        audio = base64.b64decode(payload_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 audio payload: {e}")
    return base64.b64encode(audio).decode("utf-8")


def create_media_message(stream_sid: str, payload_b64: str) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID recorded from the start event
        payload_b64: Base64 mu-law audio

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def twiml_connect_stream(stream_url: str, greeting: Optional[str] = None) -> str:
    """
    Build the TwiML returned to Twilio's incoming-call webhook.

    Says the greeting (if any) and then connects the call audio to our
    Media Streams WebSocket.
    """
    say = f"\n    <Say>{escape(greeting)}</Say>" if greeting else ""
    url = escape(stream_url, {'"': "&quot;"})
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>{say}
    <Connect>
        <Stream url="{url}" />
    </Connect>
</Response>"""

