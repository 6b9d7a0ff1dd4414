from __future__ import annotations

from dataclasses import dataclass
import json
import os
from typing import Any

from pipeline.errors import ProviderError
from providers.base import HttpProvider, SyncResult, missing_key_error

LANGUAGE_NAMES = {
    "ENGLISH": "English",
    "HINDI": "Hindi",
    "MARATHI": "Marathi",
    "BENGALI": "Bengali",
}


@dataclass(frozen=True)
class OpenAIConfig:
    api_key: str
    model: str
    base_url: str
    temperature: float
    max_output_tokens: int
    timeout_s: int


def load_openai_config() -> OpenAIConfig:
    return OpenAIConfig(
        api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        model=os.getenv("OPENAI_MODEL", "gpt-4o-2024-08-06"),
        base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
        temperature=float(os.getenv("OPENAI_TEMPERATURE", "0.7")),
        max_output_tokens=int(os.getenv("OPENAI_MAX_OUTPUT_TOKENS", "4000")),
        timeout_s=int(os.getenv("OPENAI_TIMEOUT_S", "90")),
    )


_SCRIPT_SCHEMA = {
    "type": "object",
    "properties": {"script": {"type": "string"}},
    "required": ["script"],
    "additionalProperties": False,
}

_QUIZ_SCHEMA = {
    "type": "object",
    "properties": {
        "questions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string"},
                    "options": {"type": "array", "items": {"type": "string"}},
                    "correct_index": {"type": "integer"},
                    "explanation": {"type": "string"},
                },
                "required": ["question", "options", "correct_index", "explanation"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["questions"],
    "additionalProperties": False,
}

_INTERACTIVE_SCHEMA = {
    "type": "object",
    "properties": {
        "segments": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "question": {"type": ["string", "null"]},
                    "options": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["text", "question", "options"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["segments"],
    "additionalProperties": False,
}

_BUBBLES_SCHEMA = {
    "type": "object",
    "properties": {
        "bubbles": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "start": {"type": "number"},
                    "end": {"type": "number"},
                },
                "required": ["text", "start", "end"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["bubbles"],
    "additionalProperties": False,
}


class ScriptGenerator(HttpProvider):
    """Text generation over OpenAI chat completions with strict JSON output."""

    provider_name = "openai"

    def __init__(self, config: OpenAIConfig | None = None) -> None:
        self._config = config or load_openai_config()
        super().__init__(
            base_url=self._config.base_url,
            headers={"Authorization": f"Bearer {self._config.api_key}"},
            timeout_s=self._config.timeout_s,
        )

    def _generate(self, *, name: str, schema: dict[str, Any], system_prompt: str, user_prompt: str) -> dict[str, Any]:
        if not self._config.api_key:
            raise missing_key_error(self.provider_name, "OPENAI_API_KEY")
        payload = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_output_tokens,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": name, "schema": schema, "strict": True},
            },
        }
        data = self.request_json("POST", "/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
            return json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as exc:
            raise ProviderError(
                code="invalid_response",
                message=f"{name} response did not match the schema",
                provider=self.provider_name,
                retryable=True,
            ) from exc

    def _article_prompt(self, title: str, content: str, language: str) -> str:
        return "\n".join(
            [
                f"Language: {LANGUAGE_NAMES.get(language, 'English')}",
                f"Title: {title}",
                "Article:",
                content,
            ]
        )

    def video_script(self, *, title: str, content: str, language: str) -> SyncResult:
        data = self._generate(
            name="video_script",
            schema=_SCRIPT_SCHEMA,
            system_prompt=(
                "You write narration for a 60-90 second vertical news video read by an avatar. "
                "Plain spoken sentences only, no stage directions."
            ),
            user_prompt=self._article_prompt(title, content, language),
        )
        return SyncResult(str(data.get("script") or "").strip())

    def podcast_transcript(self, *, title: str, content: str, language: str) -> SyncResult:
        data = self._generate(
            name="podcast_transcript",
            schema=_SCRIPT_SCHEMA,
            system_prompt=(
                "You write a two-voice podcast conversation about the article. "
                "Prefix every line with 'HOST:' or 'GUEST:'."
            ),
            user_prompt=self._article_prompt(title, content, language),
        )
        return SyncResult(str(data.get("script") or "").strip())

    def regenerate_podcast_transcript(
        self, *, original: str, guidance: str | None, title: str, content: str, language: str
    ) -> SyncResult:
        prompt = "\n\n".join(
            [
                self._article_prompt(title, content, language),
                f"Current transcript:\n{original}",
                f"Editor guidance:\n{guidance or 'Make it tighter and more engaging.'}",
            ]
        )
        data = self._generate(
            name="podcast_transcript",
            schema=_SCRIPT_SCHEMA,
            system_prompt=(
                "You revise a two-voice podcast conversation about the article following the "
                "editor guidance. Keep the 'HOST:' and 'GUEST:' prefixes on every line."
            ),
            user_prompt=prompt,
        )
        return SyncResult(str(data.get("script") or "").strip())

    def audio_script(self, *, title: str, content: str, language: str) -> SyncResult:
        data = self._generate(
            name="audio_script",
            schema=_SCRIPT_SCHEMA,
            system_prompt="You adapt the article into a narration script meant to be listened to.",
            user_prompt=self._article_prompt(title, content, language),
        )
        return SyncResult(str(data.get("script") or "").strip())

    def quiz(self, *, title: str, content: str, language: str, question_count: int) -> SyncResult:
        data = self._generate(
            name="quiz",
            schema=_QUIZ_SCHEMA,
            system_prompt=(
                f"You write {question_count} multiple-choice questions that check understanding "
                "of the article. Four options each."
            ),
            user_prompt=self._article_prompt(title, content, language),
        )
        return SyncResult(list(data.get("questions") or []))

    def interactive_podcast(self, *, title: str, content: str, language: str) -> SyncResult:
        data = self._generate(
            name="interactive_podcast",
            schema=_INTERACTIVE_SCHEMA,
            system_prompt=(
                "You write a short narrated episode split into segments. Some segments end "
                "with a question for the listener and answer options; others have question null."
            ),
            user_prompt=self._article_prompt(title, content, language),
        )
        return SyncResult(list(data.get("segments") or []))

    def bubbles(self, *, transcript: str, word_timings: list[dict] | None) -> SyncResult:
        timings = json.dumps((word_timings or [])[:2000])
        data = self._generate(
            name="bubbles",
            schema=_BUBBLES_SCHEMA,
            system_prompt=(
                "You pick 3-6 short key phrases from a video transcript to show as on-screen "
                "bubbles, each with start and end seconds taken from the word timings."
            ),
            user_prompt=f"Transcript:\n{transcript}\n\nWord timings:\n{timings}",
        )
        return SyncResult(list(data.get("bubbles") or []))
