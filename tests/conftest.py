"""
Pytest configuration and fixtures.
"""

import pytest
import os
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "OPENAI_API_KEY": "test_openai_key",
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "5050",
        "LOG_LEVEL": "DEBUG",
        "WEBHOOK_URL": "https://hooks.example.com/customer-details",
        "SESSION_UPDATE_DELAY_MS": "0",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.receptionist.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def test_config():
    """Config with no session update delay."""
    from src.receptionist.config import Config
    return Config(
        openai_api_key="test_openai_key",
        session_update_delay_ms=0,
        webhook_url="https://hooks.example.com/customer-details",
    )


@pytest.fixture
def sample_ulaw_b64():
    """20ms of mu-law silence, base64 encoded."""
    import base64
    return base64.b64encode(b"\xff" * 160).decode()


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_b64):
    """Sample Twilio media message."""
    import json

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": sample_ulaw_b64,
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
