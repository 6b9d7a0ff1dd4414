"""Webhook reconciliation for the avatar-video and caption-editing providers.

Callbacks carry nothing but an opaque provider handle, so every decision is
re-derived from persisted state: which row owns the handle, whether that row
is still waiting, and what its stored configuration asks for next.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from db.models import Article, CaptionStyle, StandaloneVideo, Submission, VideoOutput
from db.repository import find_by_column, update_if_current
from pipeline import state_machine
from pipeline.effects import apply_transition, model_for
from pipeline.errors import DataIntegrityError, EnqueueError, ProviderError
from pipeline.postprocess import has_post_processing
from pipeline.state_machine import TERMINAL_STATUSES, OutputKind, OutputStatus
from providers.captions import CaptionOptions

logger = logging.getLogger(__name__)

POST_PROCESS_JOB_TYPES = {
    OutputKind.VIDEO: "post-process-video-output",
    OutputKind.STANDALONE_VIDEO: "post-process-standalone-video",
}


@dataclass(frozen=True)
class CaptionEvent:
    project_id: str | None
    outcome: str
    video_url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class AvatarEvent:
    video_id: str | None
    outcome: str
    event_type: str = ""
    video_url: str | None = None
    error: str | None = None


def _first_text(payload: dict, *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


def _error_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("message") or value.get("error") or value
    return str(value or "unknown error")[:500]


def normalize_caption_payload(payload: Any) -> CaptionEvent:
    """A playable URL means success whatever ``status`` says."""
    if not isinstance(payload, dict):
        payload = {}
    project_id = _first_text(payload, "projectId", "id")
    video_url = _first_text(payload, "directUrl", "downloadUrl", "videoUrl")
    status = str(payload.get("status") or "").strip().lower()
    if video_url:
        return CaptionEvent(project_id, "completed", video_url=video_url)
    if status == "failed" or payload.get("error"):
        return CaptionEvent(project_id, "failed", error=_error_text(payload.get("error") or payload.get("message")))
    if status == "completed":
        return CaptionEvent(project_id, "unknown", error="completed without a video URL")
    return CaptionEvent(project_id, "unknown")


def normalize_avatar_payload(payload: Any) -> AvatarEvent:
    if not isinstance(payload, dict):
        payload = {}
    event_type = str(payload.get("event_type") or "")
    data = payload.get("event_data") if isinstance(payload.get("event_data"), dict) else {}
    video_id = _first_text(data, "video_id")
    if event_type == "avatar_video.success":
        url = _first_text(data, "url", "video_url")
        if url:
            return AvatarEvent(video_id, "completed", event_type, video_url=url)
        return AvatarEvent(video_id, "failed", event_type, error="finished without a video URL")
    if event_type == "avatar_video.fail":
        return AvatarEvent(video_id, "failed", event_type, error=_error_text(data.get("msg") or data.get("error")))
    return AvatarEvent(video_id, "unknown", event_type)


@dataclass(frozen=True)
class ResolvedEntity:
    kind: OutputKind
    entity: Any


@dataclass(frozen=True)
class LookupStrategy:
    kind: OutputKind
    model: Any

    def find(self, session, column: str, handle: str) -> ResolvedEntity | None:
        rows = find_by_column(session, self.model, column, handle)
        if len(rows) > 1:
            raise DataIntegrityError(
                code="ambiguous_provider_handle",
                message=f"{column}={handle} matches {len(rows)} {self.model.__tablename__} rows",
            )
        return ResolvedEntity(self.kind, rows[0]) if rows else None


# Submission-bound videos first; standalone videos only when nothing matched.
LOOKUP_ORDER = (
    LookupStrategy(OutputKind.VIDEO, VideoOutput),
    LookupStrategy(OutputKind.STANDALONE_VIDEO, StandaloneVideo),
)


def resolve_entity(session, column: str, handle: str) -> ResolvedEntity | None:
    for strategy in LOOKUP_ORDER:
        found = strategy.find(session, column, handle)
        if found is not None:
            return found
    return None


@dataclass(frozen=True)
class EntityDetails:
    organization_id: Any
    title: str
    language: str


def describe_entity(session, resolved: ResolvedEntity) -> EntityDetails:
    entity = resolved.entity
    if resolved.kind == OutputKind.STANDALONE_VIDEO:
        return EntityDetails(entity.organization_id, entity.title, entity.language)
    submission = session.get(Submission, entity.submission_id)
    article = session.get(Article, submission.article_id) if submission is not None else None
    return EntityDetails(
        organization_id=submission.organization_id if submission is not None else None,
        title=article.title if article is not None else "Video",
        language=(submission.language if submission is not None else None) or "ENGLISH",
    )


@dataclass(frozen=True)
class WebhookAck:
    status_code: int
    body: dict
    action: str


def _ack(action: str) -> WebhookAck:
    return WebhookAck(200, {"success": True}, action)


class WebhookReconciler:
    def __init__(self, ctx) -> None:
        self._ctx = ctx

    def handle_caption_callback(self, payload: Any) -> WebhookAck:
        event = normalize_caption_payload(payload)
        if not event.project_id:
            logger.warning("caption webhook without project id")
            return WebhookAck(400, {"error": "Missing project ID"}, "missing_id")
        return self._dispatch("caption", event.project_id, lambda session: self._on_caption(session, event))

    def handle_avatar_callback(self, payload: Any) -> WebhookAck:
        event = normalize_avatar_payload(payload)
        if event.outcome == "unknown":
            logger.info("avatar webhook event %s ignored", event.event_type or "<none>")
            return _ack("ignored")
        if not event.video_id:
            logger.warning("avatar webhook without video id (event=%s)", event.event_type)
            return WebhookAck(400, {"error": "Missing video ID"}, "missing_id")
        return self._dispatch("avatar", event.video_id, lambda session: self._on_avatar(session, event))

    def _dispatch(self, source: str, handle: str, handler) -> WebhookAck:
        session = self._ctx.session_factory()
        try:
            action = handler(session)
        except DataIntegrityError as exc:
            session.rollback()
            logger.error("%s webhook %s: %s", source, handle, exc)
            action = "integrity_error"
        except Exception:
            # providers redeliver on non-2xx; the failure is logged and acknowledged
            session.rollback()
            logger.exception("%s webhook %s failed", source, handle)
            action = "error"
        finally:
            session.close()
        logger.info("%s webhook %s: %s", source, handle, action)
        return _ack(action)

    def _on_caption(self, session, event: CaptionEvent) -> str:
        if event.outcome == "unknown":
            if event.error:
                logger.error("caption project %s: %s; leaving the output as is", event.project_id, event.error)
            return "ignored"
        resolved = resolve_entity(session, "submagic_project_id", event.project_id)
        if resolved is None:
            logger.error("caption webhook for unknown project %s", event.project_id)
            return "orphan"
        if resolved.entity.status in TERMINAL_STATUSES:
            return "terminal"
        guards = {"submagic_project_id": event.project_id}
        if event.outcome == "failed":
            return self._fail(session, resolved, f"Caption editing failed: {event.error}", guards)
        if resolved.entity.status != OutputStatus.PROCESSING.value:
            return "unexpected_state"
        return self._accept_edited_video(session, resolved, event.video_url, guards)

    def _on_avatar(self, session, event: AvatarEvent) -> str:
        if event.outcome == "unknown":
            return "ignored"
        resolved = resolve_entity(session, "heygen_video_id", event.video_id)
        if resolved is None:
            logger.error("avatar webhook for unknown video %s", event.video_id)
            return "orphan"
        entity = resolved.entity
        if entity.status in TERMINAL_STATUSES:
            return "terminal"
        guards = {"heygen_video_id": event.video_id}
        if event.outcome == "failed":
            return self._fail(session, resolved, f"Avatar video generation failed: {event.error}", guards)
        if entity.status != OutputStatus.PROCESSING.value:
            return "unexpected_state"
        if entity.submagic_project_id or entity.edited_video_url:
            return "duplicate"
        if not (self._ctx.settings.enable_caption_editing and entity.enable_captions):
            return self._accept_edited_video(session, resolved, event.video_url, guards)

        details = describe_entity(session, resolved)
        try:
            handle = self._ctx.providers.captions.submit(
                video_url=event.video_url,
                title=details.title,
                language=details.language,
                webhook_url=self._ctx.caption_webhook_url,
                options=self._caption_options(session, entity),
            )
        except ProviderError as exc:
            logger.warning(
                "%s %s: caption submit failed (%s), using the avatar render as is",
                resolved.kind.value,
                entity.id,
                exc,
            )
            return self._accept_edited_video(session, resolved, event.video_url, guards)

        stored = update_if_current(
            session,
            model_for(resolved.kind),
            entity.id,
            (OutputStatus.PROCESSING.value,),
            {"submagic_project_id": handle.provider_handle},
            guards={**guards, "submagic_project_id": None},
        )
        session.commit()
        return "caption_submitted" if stored else "duplicate"

    def _caption_options(self, session, entity) -> CaptionOptions:
        style = session.get(CaptionStyle, entity.caption_style_id) if entity.caption_style_id else None
        return CaptionOptions(
            template_name=style.template_name if style is not None else None,
            user_theme_id=style.user_theme_id if style is not None else None,
            magic_zooms=bool(entity.enable_magic_zooms),
            magic_brolls=bool(entity.enable_magic_brolls),
            magic_brolls_percentage=entity.magic_brolls_percentage if entity.magic_brolls_percentage is not None else 40,
        )

    def _fail(self, session, resolved: ResolvedEntity, message: str, guards: dict) -> str:
        result = state_machine.fail(resolved.kind, resolved.entity, message=message, guards=guards)
        if not result.ok:
            return "terminal"
        return "failed" if apply_transition(self._ctx, session, result.value) else "stale"

    def _accept_edited_video(self, session, resolved: ResolvedEntity, video_url: str, guards: dict) -> str:
        """Record the edited media once, then route it to the next stage."""
        model = model_for(resolved.kind)
        entity_id = resolved.entity.id
        recorded = update_if_current(
            session,
            model,
            entity_id,
            (OutputStatus.PROCESSING.value,),
            {"edited_video_url": video_url},
            guards={**guards, "edited_video_url": None},
        )
        if not recorded:
            session.rollback()
            return "duplicate"
        session.commit()

        entity = session.get(model, entity_id)
        try:
            return route_edited_video(self._ctx, session, ResolvedEntity(resolved.kind, entity), video_url)
        except EnqueueError:
            # release the claim so a redelivered callback can try again
            update_if_current(
                session,
                model,
                entity_id,
                (OutputStatus.PROCESSING.value,),
                {"edited_video_url": None},
                guards={"edited_video_url": video_url},
            )
            session.commit()
            logger.error("%s %s: could not enqueue the next stage", resolved.kind.value, entity_id)
            return "enqueue_failed"


def route_edited_video(ctx, session, resolved: ResolvedEntity, video_url: str) -> str:
    """Branch on the entity's stored bumper/music configuration."""
    entity = resolved.entity
    if has_post_processing(entity):
        details = describe_entity(session, resolved)
        ctx.queue.enqueue(
            POST_PROCESS_JOB_TYPES[resolved.kind],
            {
                "entityId": str(entity.id),
                "organizationId": str(details.organization_id),
                "editedVideoUrl": video_url,
            },
        )
        return "post_process_enqueued"
    ctx.queue.enqueue(
        "process-video-completion",
        {"providerVideoId": entity.heygen_video_id, "videoUrl": video_url},
    )
    return "completion_enqueued"
