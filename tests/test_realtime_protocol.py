"""
Tests for the OpenAI Realtime event codec.
"""

import json

import pytest

from src.receptionist import realtime_protocol as rt


def test_session_update_declares_call_settings(test_config):
    message = rt.build_session_update(test_config)

    assert message["type"] == "session.update"
    session = message["session"]
    assert session["turn_detection"] == {"type": "server_vad"}
    assert session["input_audio_format"] == "g711_ulaw"
    assert session["output_audio_format"] == "g711_ulaw"
    assert session["modalities"] == ["text", "audio"]
    assert session["temperature"] == 0.8
    assert session["voice"] == "alloy"
    assert session["input_audio_transcription"] == {"model": "whisper-1"}
    assert "Bart's Automotive" in session["instructions"]


def test_audio_append_wraps_payload_untouched():
    assert rt.build_audio_append("AAEC") == {"type": "input_audio_buffer.append", "audio": "AAEC"}


def test_parse_realtime_event():
    event = rt.parse_realtime_event(json.dumps({"type": "session.created", "session": {}}))

    assert event["type"] == "session.created"


@pytest.mark.parametrize("raw", ["{bad", "[]", '{"no_type": true}', '{"type": 3}', None])
def test_parse_realtime_event_rejects_malformed(raw):
    with pytest.raises(ValueError):
        rt.parse_realtime_event(raw)


def test_find_agent_transcript_first_content_with_transcript():
    event = {
        "type": "response.done",
        "response": {
            "output": [
                {
                    "content": [
                        {"type": "audio"},
                        {"type": "audio", "transcript": "Sure, when works for you?"},
                        {"type": "audio", "transcript": "ignored"},
                    ]
                }
            ]
        },
    }

    assert rt.find_agent_transcript(event) == "Sure, when works for you?"


def test_find_agent_transcript_reads_only_first_output_item():
    event = {
        "type": "response.done",
        "response": {
            "output": [
                {"type": "function_call", "name": "noop"},
                {"type": "message", "content": [{"transcript": "Hello"}]},
            ]
        },
    }

    assert rt.find_agent_transcript(event) is None


@pytest.mark.parametrize(
    "event",
    [
        {"type": "response.done"},
        {"type": "response.done", "response": {"output": []}},
        {"type": "response.done", "response": {"output": [{"content": [{"type": "text", "text": "hi"}]}]}},
    ],
)
def test_find_agent_transcript_missing(event):
    assert rt.find_agent_transcript(event) is None
