from __future__ import annotations

from src.turnloop.providers.http_tts import HTTPStreamingTTS, SpeechRequest

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramTTS(HTTPStreamingTTS):
    """
    Deepgram Aura TTS.

    Requests headerless linear16 (`container=none`) at the session rate, so
    chunks pass through without resampling.
    """

    name = "deepgram"

    def build_request(self, text: str) -> SpeechRequest:
        return SpeechRequest(
            url=DEEPGRAM_SPEAK_URL,
            params={
                "model": self.config.deepgram_tts_model,
                "encoding": "linear16",
                "sample_rate": self.config.sample_rate,
                "container": "none",
            },
            headers={"Authorization": f"Token {self.config.deepgram_api_key}"},
            body={"text": text},
        )
