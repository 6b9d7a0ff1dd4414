from __future__ import annotations

from dataclasses import dataclass
import os

from pipeline.errors import ProviderError
from providers.base import AsyncHandle, HttpProvider, missing_key_error

CAPTION_LANGUAGES = {
    "ENGLISH": "en",
    "HINDI": "hi",
    # no native Marathi/Bengali caption models; Devanagari output is closest
    "MARATHI": "hi",
    "BENGALI": "hi",
}


def caption_language(language: str | None) -> str:
    return CAPTION_LANGUAGES.get((language or "").upper(), "en")


@dataclass(frozen=True)
class SubmagicConfig:
    api_key: str
    base_url: str
    default_template: str
    timeout_s: int


def load_submagic_config() -> SubmagicConfig:
    return SubmagicConfig(
        api_key=os.getenv("SUBMAGIC_API_KEY", "").strip(),
        base_url=os.getenv("SUBMAGIC_BASE_URL", "https://api.submagic.co/v1"),
        default_template=os.getenv("SUBMAGIC_DEFAULT_TEMPLATE", "Ella"),
        timeout_s=int(os.getenv("SUBMAGIC_TIMEOUT_S", "60")),
    )


@dataclass(frozen=True)
class CaptionOptions:
    template_name: str | None = None
    user_theme_id: str | None = None
    magic_zooms: bool = False
    magic_brolls: bool = False
    magic_brolls_percentage: int = 40


class CaptionEditor(HttpProvider):
    """Submits a rendered video for captioning; the edit arrives on the webhook."""

    provider_name = "submagic"

    def __init__(self, config: SubmagicConfig | None = None) -> None:
        self._config = config or load_submagic_config()
        super().__init__(
            base_url=self._config.base_url,
            headers={"x-api-key": self._config.api_key},
            timeout_s=self._config.timeout_s,
        )

    def submit(
        self,
        *,
        video_url: str,
        title: str,
        language: str | None,
        webhook_url: str,
        options: CaptionOptions | None = None,
    ) -> AsyncHandle:
        if not self._config.api_key:
            raise missing_key_error(self.provider_name, "SUBMAGIC_API_KEY")
        options = options or CaptionOptions()
        payload = {
            "title": title[:100],
            "language": caption_language(language),
            "videoUrl": video_url,
            "webhookUrl": webhook_url,
            "magicZooms": options.magic_zooms,
            "magicBrolls": options.magic_brolls,
            "magicBrollsPercentage": max(0, min(100, options.magic_brolls_percentage)),
        }
        if options.user_theme_id:
            payload["userThemeId"] = options.user_theme_id
        else:
            payload["templateName"] = options.template_name or self._config.default_template
        data = self.request_json("POST", "/projects", payload)
        project_id = data.get("id") or data.get("projectId")
        if not project_id:
            raise ProviderError(
                code="invalid_response",
                message="no project id in response",
                provider=self.provider_name,
                retryable=True,
            )
        return AsyncHandle(str(project_id))
