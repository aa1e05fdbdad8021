"""
Pytest configuration and fixtures.
"""

import os
from unittest.mock import patch

import pytest

from src.turnloop.audio import create_silence, create_tone, frame_size_bytes


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "STT_PROVIDER": "openai",
        "LLM_PROVIDER": "openai",
        "TTS_PROVIDER": "openai",
        "OPENAI_API_KEY": "sk-test-openai",
        "GROQ_API_KEY": "test_groq_key",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "CARTESIA_API_KEY": "test_cartesia_key",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "ASSEMBLYAI_API_KEY": "test_assemblyai_key",
        "VALIDATE_MODELS": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.turnloop.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def silence_frame():
    """20ms of silence at 16kHz."""
    return create_silence(20)


@pytest.fixture
def speech_frame():
    """20ms of loud tone at 16kHz, well above the VAD threshold."""
    return create_tone(20, amplitude=0.5)


@pytest.fixture
def frame_bytes():
    return frame_size_bytes(16000)
