"""
Tests for configuration loading and validation.
"""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from src.turnloop.config import Config, ConfigError, get_config, init_config


def test_defaults_from_env():
    config = get_config()
    assert config.port == 7860
    assert config.stt_provider == "openai"
    assert config.busy_policy == "interrupt"
    assert config.sample_rate == 16000
    assert config.tts_queue_size == 2
    assert config.validate_models is False
    assert config.ws_path == "/v1/realtime"


def test_get_config_is_cached():
    assert get_config() is get_config()


def test_env_overrides():
    with patch.dict(
        os.environ,
        {
            "BUSY_POLICY": "Queue",
            "MAX_TOOL_CALLS": "2",
            "PROVIDER_TIMEOUT_S": "2.5",
            "VALIDATE_MODELS": "yes",
        },
    ):
        get_config.cache_clear()
        config = get_config()
    assert config.busy_policy == "queue"
    assert config.max_tool_calls == 2
    assert config.provider_timeout_s == 2.5
    assert config.validate_models is True


def test_bad_numbers_fall_back_to_defaults():
    with patch.dict(os.environ, {"PORT": "not-a-port", "VAD_THRESHOLD": "loud"}):
        get_config.cache_clear()
        config = get_config()
    assert config.port == 7860
    assert config.vad_threshold == 0.02


def test_init_config_validates():
    assert init_config().llm_provider == "openai"


@pytest.mark.parametrize(
    "overrides, match",
    [
        ({"stt_provider": "whisper"}, "STT_PROVIDER"),
        ({"tts_provider": "espeak"}, "TTS_PROVIDER"),
        ({"busy_policy": "ignore"}, "BUSY_POLICY"),
        ({"tts_queue_size": 3}, "TTS_QUEUE_SIZE"),
        ({"max_tool_calls": -1}, "MAX_TOOL_CALLS"),
        ({"provider_timeout_s": 0}, "PROVIDER_TIMEOUT_S"),
        ({"vad_threshold": 1.5}, "VAD_THRESHOLD"),
        ({"sample_rate": 11025}, "SAMPLE_RATE"),
        ({"openai_api_key": ""}, "OPENAI_API_KEY"),
    ],
)
def test_validate_rejects(overrides, match):
    config = replace(Config(openai_api_key="sk-test"), **overrides)
    with pytest.raises(ConfigError, match=match):
        config.validate()


def test_groq_requires_key():
    config = Config(openai_api_key="sk-test", llm_provider="groq", llm_model="llama-3.3-70b-versatile")
    with pytest.raises(ConfigError, match="GROQ_API_KEY"):
        config.validate()


def test_vendor_keys_only_required_when_selected():
    config = Config(
        stt_provider="deepgram",
        llm_provider="groq",
        tts_provider="cartesia",
        deepgram_api_key="dg",
        groq_api_key="gq",
        cartesia_api_key="ct",
    )
    config.validate()


@pytest.mark.parametrize(
    "overrides, match",
    [
        ({"tts_provider": "elevenlabs"}, "ELEVENLABS_API_KEY"),
        ({"tts_provider": "deepgram"}, "DEEPGRAM_API_KEY"),
        ({"stt_provider": "assemblyai"}, "ASSEMBLYAI_API_KEY"),
    ],
)
def test_added_vendors_require_keys(overrides, match):
    config = replace(Config(openai_api_key="sk-test"), **overrides)
    with pytest.raises(ConfigError, match=match):
        config.validate()


def test_added_vendors_validate_with_keys():
    config = Config(
        stt_provider="assemblyai",
        llm_provider="groq",
        tts_provider="elevenlabs",
        assemblyai_api_key="aai",
        elevenlabs_api_key="el",
        groq_api_key="gq",
    )
    config.validate()

    replace(config, tts_provider="deepgram", deepgram_api_key="dg").validate()
