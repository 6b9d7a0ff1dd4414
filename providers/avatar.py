from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import os
from typing import Any

from pipeline.errors import ProviderError
from providers.base import AsyncHandle, HttpProvider, missing_key_error


@dataclass(frozen=True)
class HeyGenConfig:
    api_key: str
    base_url: str
    webhook_secret: str
    width: int
    height: int
    timeout_s: int


def load_heygen_config() -> HeyGenConfig:
    return HeyGenConfig(
        api_key=os.getenv("HEYGEN_API_KEY", "").strip(),
        base_url=os.getenv("HEYGEN_BASE_URL", "https://api.heygen.com/v2"),
        webhook_secret=os.getenv("HEYGEN_WEBHOOK_SECRET", "").strip(),
        width=int(os.getenv("HEYGEN_VIDEO_WIDTH", "720")),
        height=int(os.getenv("HEYGEN_VIDEO_HEIGHT", "1280")),
        timeout_s=int(os.getenv("HEYGEN_TIMEOUT_S", "60")),
    )


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


class AvatarVideoGenerator(HttpProvider):
    """Starts an avatar render; completion arrives on the webhook."""

    provider_name = "heygen"

    def __init__(self, config: HeyGenConfig | None = None) -> None:
        self._config = config or load_heygen_config()
        super().__init__(
            base_url=self._config.base_url,
            headers={"X-Api-Key": self._config.api_key},
            timeout_s=self._config.timeout_s,
        )

    def _character(self, character_id: str | None, character_type: str) -> dict[str, Any]:
        if not character_id:
            raise ProviderError(
                code="character_required",
                message="an avatar or talking photo id is required",
                provider=self.provider_name,
            )
        if character_type == "talking_photo":
            return {"type": "talking_photo", "talking_photo_id": character_id}
        return {"type": "avatar", "avatar_id": character_id, "avatar_style": "normal"}

    def generate(
        self,
        *,
        title: str,
        character_id: str | None,
        character_type: str = "avatar",
        script: str | None = None,
        voice_id: str | None = None,
        audio_url: str | None = None,
    ) -> AsyncHandle:
        if not self._config.api_key:
            raise missing_key_error(self.provider_name, "HEYGEN_API_KEY")
        if audio_url:
            voice: dict[str, Any] = {"type": "audio", "audio_url": audio_url}
        else:
            voice = {"type": "text", "input_text": script or "", "voice_id": voice_id}
        payload = {
            "title": title[:100],
            "video_inputs": [
                {"character": self._character(character_id, character_type), "voice": voice}
            ],
            "dimension": {"width": self._config.width, "height": self._config.height},
        }
        data = self.request_json("POST", "/video/generate", payload)
        if data.get("error"):
            raise ProviderError(
                code="rejected",
                message=str(data["error"])[:300],
                provider=self.provider_name,
            )
        video_id = (data.get("data") or {}).get("video_id")
        if not video_id:
            raise ProviderError(
                code="invalid_response",
                message="no video_id in response",
                provider=self.provider_name,
                retryable=True,
            )
        return AsyncHandle(str(video_id))
