"""
OpenAI Realtime API event codec.

Client events we send:
- session.update: one-shot session configuration (VAD, g711_ulaw, persona, transcription)
- input_audio_buffer.append: caller audio, base64 g711_ulaw straight from Twilio

Server events we act on:
- conversation.item.input_audio_transcription.completed: caller utterance transcript
- response.done: finished assistant response (carries the spoken transcript)
- response.audio.delta: assistant audio chunk (base64 g711_ulaw)
- session.created / session.updated / error: logged
"""

from __future__ import annotations

import json
from typing import Any, Optional

from src.receptionist.config import Config

SESSION_UPDATE = "session.update"
INPUT_AUDIO_BUFFER_APPEND = "input_audio_buffer.append"

SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
INPUT_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
RESPONSE_DONE = "response.done"
RESPONSE_AUDIO_DELTA = "response.audio.delta"
ERROR = "error"

# Server events worth an info line; everything else is ignored quietly.
LOG_EVENT_TYPES = frozenset(
    {
        "response.content.done",
        "rate_limits.updated",
        RESPONSE_DONE,
        "input_audio_buffer.committed",
        "input_audio_buffer.speech_stopped",
        "input_audio_buffer.speech_started",
        SESSION_CREATED,
        SESSION_UPDATED,
        "response.text.done",
        INPUT_TRANSCRIPTION_COMPLETED,
    }
)

AGENT_MESSAGE_NOT_FOUND = "Agent message not found"


def build_session_update(config: Config) -> dict[str, Any]:
    """Build the session.update event sent once after the upstream socket opens."""
    return {
        "type": SESSION_UPDATE,
        "session": {
            "turn_detection": {"type": "server_vad"},
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "voice": config.openai_realtime_voice,
            "instructions": config.openai_realtime_instructions,
            "modalities": ["text", "audio"],
            "temperature": config.openai_realtime_temperature,
            "input_audio_transcription": {"model": config.openai_realtime_transcription_model},
        },
    }


def build_audio_append(payload_b64: str) -> dict[str, Any]:
    return {"type": INPUT_AUDIO_BUFFER_APPEND, "audio": payload_b64}


def parse_realtime_event(raw: Any) -> dict[str, Any]:
    """
    Decode one server event.

    Raises:
        ValueError: If the frame is not a JSON object with a string `type`
    """
    try:
        event = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise ValueError("Realtime event is not an object with a type")
    return event


def find_agent_transcript(event: dict[str, Any]) -> Optional[str]:
    """
    Return the spoken transcript of a response.done event.

    Only the first output item is read: returns the first non-empty `transcript`
    in `response.output[0].content`, or None when that item carried no audio
    transcript (e.g. a function call, a text-only or a cancelled response).
    """
    response = event.get("response")
    if not isinstance(response, dict):
        return None

    output = response.get("output")
    if not isinstance(output, list) or not output or not isinstance(output[0], dict):
        return None

    for content in output[0].get("content") or []:
        if isinstance(content, dict):
            transcript = content.get("transcript")
            if isinstance(transcript, str) and transcript:
                return transcript
    return None
