from __future__ import annotations

from dataclasses import dataclass, field
import json
import math
import os
import time
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.errors import ProviderError
from providers.base import SyncResult, download_bytes

TRANSCRIBE_LANGUAGES = {
    "ENGLISH": "en-US",
    "HINDI": "hi-IN",
    "MARATHI": "mr-IN",
    "BENGALI": "bn-IN",
}


@dataclass(frozen=True)
class TranscribeConfig:
    region: str
    poll_interval_s: float
    max_wait_s: int


def load_transcribe_config() -> TranscribeConfig:
    return TranscribeConfig(
        region=os.getenv("AWS_REGION", "ap-south-1"),
        poll_interval_s=float(os.getenv("TRANSCRIBE_POLL_INTERVAL_S", "5")),
        max_wait_s=int(os.getenv("TRANSCRIBE_MAX_WAIT_S", "600")),
    )


@dataclass(frozen=True)
class Transcript:
    text: str
    duration: int
    word_timings: list[dict] = field(default_factory=list)


def parse_transcript_document(document: dict) -> Transcript:
    results = document.get("results") or {}
    transcripts = results.get("transcripts") or []
    text = " ".join(item.get("transcript", "") for item in transcripts).strip()
    words: list[dict] = []
    for item in results.get("items") or []:
        if item.get("type") != "pronunciation":
            continue
        alternatives = item.get("alternatives") or [{}]
        words.append(
            {
                "word": alternatives[0].get("content", ""),
                "start": float(item.get("start_time", 0)),
                "end": float(item.get("end_time", 0)),
            }
        )
    duration = math.ceil(words[-1]["end"]) if words else 0
    return Transcript(text=text, duration=duration, word_timings=words)


class Transcriber:
    """AWS Transcribe batch job, polled until it finishes."""

    provider_name = "aws-transcribe"

    def __init__(self, config: TranscribeConfig | None = None, client=None) -> None:
        self._config = config or load_transcribe_config()
        self._client = client

    def _transcribe_client(self):
        if self._client is None:
            self._client = boto3.client("transcribe", region_name=self._config.region)
        return self._client

    def _error(self, code: str, message: str, retryable: bool = False) -> ProviderError:
        return ProviderError(code=code, message=message[:300], provider=self.provider_name, retryable=retryable)

    def transcribe(self, *, media_uri: str, language: str | None = None, media_format: str = "mp4") -> SyncResult:
        if not media_uri.startswith("s3://"):
            raise self._error("unsupported_media", "transcription needs an s3:// media uri")
        client = self._transcribe_client()
        job_name = f"media-{uuid4().hex}"
        try:
            client.start_transcription_job(
                TranscriptionJobName=job_name,
                Media={"MediaFileUri": media_uri},
                MediaFormat=media_format,
                LanguageCode=TRANSCRIBE_LANGUAGES.get((language or "").upper(), "en-US"),
            )
            deadline = time.monotonic() + self._config.max_wait_s
            while True:
                job = client.get_transcription_job(TranscriptionJobName=job_name)["TranscriptionJob"]
                status = job.get("TranscriptionJobStatus")
                if status == "COMPLETED":
                    uri = job["Transcript"]["TranscriptFileUri"]
                    break
                if status == "FAILED":
                    raise self._error("transcription_failed", job.get("FailureReason") or "transcription failed")
                if time.monotonic() > deadline:
                    raise self._error("timeout", f"transcription not finished after {self._config.max_wait_s}s", True)
                time.sleep(self._config.poll_interval_s)
        except (BotoCoreError, ClientError) as exc:
            raise self._error("aws_error", str(exc), True) from exc

        raw = download_bytes(uri, provider=self.provider_name)
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise self._error("invalid_response", "transcript document was not JSON") from exc
        return SyncResult(parse_transcript_document(document))
