from __future__ import annotations

import base64
import binascii
import os

from pipeline.errors import ProviderError
from providers.base import HttpProvider, SyncResult, missing_key_error
from providers.script import OpenAIConfig, load_openai_config


class ThumbnailGenerator(HttpProvider):
    provider_name = "openai-images"

    def __init__(self, config: OpenAIConfig | None = None) -> None:
        self._config = config or load_openai_config()
        self._model = os.getenv("OPENAI_IMAGE_MODEL", "gpt-image-1")
        self._size = os.getenv("OPENAI_IMAGE_SIZE", "1024x1024")
        super().__init__(
            base_url=self._config.base_url,
            headers={"Authorization": f"Bearer {self._config.api_key}"},
            timeout_s=max(self._config.timeout_s, 120),
        )

    def generate(self, *, title: str) -> SyncResult:
        if not self._config.api_key:
            raise missing_key_error(self.provider_name, "OPENAI_API_KEY")
        prompt = (
            "Editorial thumbnail illustration for a news story, no text, "
            f"bold composition. Story: {title[:300]}"
        )
        data = self.request_json(
            "POST",
            "/images/generations",
            {"model": self._model, "prompt": prompt, "size": self._size, "n": 1},
        )
        try:
            encoded = data["data"][0]["b64_json"]
            return SyncResult(base64.b64decode(encoded))
        except (KeyError, IndexError, TypeError, binascii.Error) as exc:
            raise ProviderError(
                code="invalid_response",
                message="image response had no b64_json payload",
                provider=self.provider_name,
            ) from exc
