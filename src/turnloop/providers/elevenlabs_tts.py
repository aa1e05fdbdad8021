from __future__ import annotations

from src.turnloop.providers.http_tts import HTTPStreamingTTS, SpeechRequest

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech"
# Raw PCM output formats the streaming endpoint offers.
ELEVENLABS_PCM_RATES = (8000, 16000, 22050, 24000, 44100, 48000)


class ElevenLabsTTS(HTTPStreamingTTS):
    """ElevenLabs streaming TTS (raw pcm_<rate> output)."""

    name = "elevenlabs"

    @property
    def output_rate(self) -> int:
        if self.config.sample_rate in ELEVENLABS_PCM_RATES:
            return self.config.sample_rate
        return 24000

    def build_request(self, text: str) -> SpeechRequest:
        return SpeechRequest(
            url=f"{ELEVENLABS_TTS_URL}/{self.config.elevenlabs_voice_id}/stream",
            params={"output_format": f"pcm_{self.output_rate}"},
            headers={"xi-api-key": self.config.elevenlabs_api_key},
            body={"text": text, "model_id": self.config.elevenlabs_model},
        )
