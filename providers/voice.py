from __future__ import annotations

from dataclasses import dataclass
import os

from providers.base import HttpProvider, SyncResult, missing_key_error


@dataclass(frozen=True)
class ElevenLabsConfig:
    api_key: str
    base_url: str
    default_voice_id: str
    model_id: str
    timeout_s: int


def load_elevenlabs_config() -> ElevenLabsConfig:
    return ElevenLabsConfig(
        api_key=os.getenv("ELEVENLABS_API_KEY", "").strip(),
        base_url=os.getenv("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1"),
        default_voice_id=os.getenv("ELEVENLABS_DEFAULT_VOICE_ID", "EXAVITQu4vr4xnSDxMaL"),
        model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_v3"),
        timeout_s=int(os.getenv("ELEVENLABS_TIMEOUT_S", "120")),
    )


@dataclass(frozen=True)
class SpeechAudio:
    data: bytes
    content_type: str
    estimated_duration: int


def estimate_speech_seconds(text: str, words_per_minute: int = 150) -> int:
    words = len((text or "").split())
    return max(1, round(words * 60 / words_per_minute))


class VoiceSynthesizer(HttpProvider):
    provider_name = "elevenlabs"

    def __init__(self, config: ElevenLabsConfig | None = None) -> None:
        self._config = config or load_elevenlabs_config()
        super().__init__(
            base_url=self._config.base_url,
            headers={"xi-api-key": self._config.api_key},
            timeout_s=self._config.timeout_s,
        )

    @property
    def default_voice_id(self) -> str:
        return self._config.default_voice_id

    def synthesize(self, *, text: str, voice_id: str | None = None) -> SyncResult:
        if not self._config.api_key:
            raise missing_key_error(self.provider_name, "ELEVENLABS_API_KEY")
        voice = voice_id or self._config.default_voice_id
        audio = self.request_bytes(
            "POST",
            f"/text-to-speech/{voice}",
            {"text": text, "model_id": self._config.model_id},
            accept="audio/mpeg",
        )
        return SyncResult(
            SpeechAudio(
                data=audio,
                content_type="audio/mpeg",
                estimated_duration=estimate_speech_seconds(text),
            )
        )
