from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any, Callable


@dataclass(frozen=True)
class PipelineSettings:
    webhook_base_url: str
    output_timeout_min: int
    transcript_fallback_duration_s: int
    enable_caption_editing: bool


def load_pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        webhook_base_url=os.getenv("WEBHOOK_BASE_URL", "http://localhost:8000").rstrip("/"),
        output_timeout_min=int(os.getenv("OUTPUT_TIMEOUT_MIN", "30")),
        transcript_fallback_duration_s=int(os.getenv("TRANSCRIPT_FALLBACK_DURATION_S", "120")),
        enable_caption_editing=os.getenv("CAPTION_EDITING_ENABLED", "1").lower() in {"1", "true", "yes"},
    )


@dataclass
class PipelineContext:
    """Everything a request handler or job needs, constructed explicitly."""

    session_factory: Callable[[], Any]
    queue: Any
    providers: Any
    storage: Any
    post_processor: Any
    settings: PipelineSettings

    @property
    def caption_webhook_url(self) -> str:
        return f"{self.settings.webhook_base_url}/webhooks/submagic"


def build_context(
    *,
    session_factory: Callable[[], Any] | None = None,
    queue: Any = None,
    providers: Any = None,
    storage: Any = None,
    post_processor: Any = None,
    settings: PipelineSettings | None = None,
) -> PipelineContext:
    if session_factory is None:
        from db.session import SessionLocal

        session_factory = SessionLocal
    if queue is None:
        from pipeline.queue import JobQueue

        queue = JobQueue(session_factory)
    if providers is None:
        from providers import load_providers

        providers = load_providers()
    if storage is None:
        from providers import load_storage

        storage = load_storage()
    if post_processor is None:
        from pipeline.postprocess import PostProcessor

        post_processor = PostProcessor(storage)
    return PipelineContext(
        session_factory=session_factory,
        queue=queue,
        providers=providers,
        storage=storage,
        post_processor=post_processor,
        settings=settings or load_pipeline_settings(),
    )
