"""Request-side operations on articles, submissions and standalone videos.

Every function takes an open session and the caller's organization, and
returns a ``Result``: expected rejections come back as values for the API
layer to translate. The functions commit their own writes.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import desc, or_, select

from db.models import (
    Article,
    AudioOutput,
    BackgroundMusic,
    CaptionStyle,
    InteractivePodcastOutput,
    PodcastOutput,
    QuizOutput,
    StandaloneVideo,
    Submission,
    VideoBumper,
    VideoOutput,
)
from pipeline import state_machine
from pipeline.effects import apply_or_fail, apply_transition, model_for, run_commands
from pipeline.errors import InvalidStateTransition, NotFoundError, ProviderError, Result, ValidationError
from pipeline.rollup import SUBMISSION_CHILDREN
from pipeline.state_machine import EnqueueJob, OutputKind

logger = logging.getLogger(__name__)

LANGUAGES = ("ENGLISH", "HINDI", "MARATHI", "BENGALI")

OUTPUT_FLAGS = {kind: flag for flag, kind, _model in SUBMISSION_CHILDREN}

VIDEO_FIELDS = (
    "character_id",
    "character_type",
    "voice_id",
    "caption_style_id",
    "enable_captions",
    "enable_magic_zooms",
    "enable_magic_brolls",
    "magic_brolls_percentage",
    "start_bumper_id",
    "start_bumper_duration",
    "end_bumper_id",
    "end_bumper_duration",
    "background_music_id",
    "background_music_volume",
)


def parse_output_kind(value: str) -> Result:
    normalized = (value or "").strip().lower().replace("-", "_")
    try:
        kind = OutputKind(normalized)
    except ValueError:
        kind = None
    if kind is None or kind == OutputKind.STANDALONE_VIDEO:
        return Result.failure(ValidationError(code="unknown_output_kind", message=f"unknown output kind: {value}"))
    return Result.success(kind)


def _language(value: str | None) -> Result:
    language = (value or "ENGLISH").strip().upper()
    if language not in LANGUAGES:
        return Result.failure(ValidationError(code="invalid_language", message=f"unsupported language: {value}"))
    return Result.success(language)


def _asset_error(session, organization_id, config: dict[str, Any]) -> ValidationError | None:
    checks = (
        ("start_bumper_id", VideoBumper),
        ("end_bumper_id", VideoBumper),
        ("background_music_id", BackgroundMusic),
    )
    for field, model in checks:
        asset_id = config.get(field)
        if asset_id is None:
            continue
        row = session.get(model, asset_id)
        if row is None or row.organization_id != organization_id:
            return ValidationError(code="invalid_asset", message=f"{field} does not exist in this organization")
        slot = field.split("_", 1)[0]
        if model is VideoBumper and row.position not in (slot, "both"):
            return ValidationError(code="invalid_asset", message=f"{field} is a {row.position} bumper")

    style_id = config.get("caption_style_id")
    if style_id is not None:
        style = session.execute(
            select(CaptionStyle).where(
                CaptionStyle.id == style_id,
                or_(CaptionStyle.organization_id == organization_id, CaptionStyle.organization_id.is_(None)),
            )
        ).scalar_one_or_none()
        if style is None:
            return ValidationError(code="invalid_asset", message="caption_style_id does not exist")

    percentage = config.get("magic_brolls_percentage")
    if percentage is not None and not 0 <= int(percentage) <= 100:
        return ValidationError(code="invalid_option", message="magic_brolls_percentage must be between 0 and 100")
    volume = config.get("background_music_volume")
    if volume is not None and not 0 <= float(volume) <= 1:
        return ValidationError(code="invalid_option", message="background_music_volume must be between 0 and 1")
    for field in ("start_bumper_duration", "end_bumper_duration"):
        value = config.get(field)
        if value is not None and float(value) <= 0:
            return ValidationError(code="invalid_option", message=f"{field} must be positive")
    return None


def _video_values(config: dict[str, Any]) -> dict[str, Any]:
    return {field: config[field] for field in VIDEO_FIELDS if config.get(field) is not None}


def _begin(ctx, session, transition) -> Result:
    error = apply_or_fail(ctx, session, transition)
    if error is not None:
        return Result.failure(error)
    return Result.success(session.get(model_for(transition.kind), transition.entity_id))


def create_article(ctx, session, org, user_id: str | None, *, title: str, content: str, language: str | None = None) -> Result:
    if not (title or "").strip() or not (content or "").strip():
        return Result.failure(ValidationError(code="invalid_article", message="title and content are required"))
    parsed = _language(language)
    if not parsed.ok:
        return parsed

    article = Article(
        organization_id=org.id,
        title=title.strip(),
        content=content,
        language=parsed.value,
        created_by=user_id,
    )
    session.add(article)
    session.commit()
    session.refresh(article)

    run_commands(
        ctx,
        session,
        (
            EnqueueJob(
                "generate-article-thumbnail",
                {"articleId": str(article.id), "title": article.title, "organizationId": str(org.id)},
                critical=False,
            ),
        ),
    )
    return Result.success(article)


def get_article(session, org, article_id) -> Result:
    article = session.get(Article, article_id)
    if article is None or article.organization_id != org.id:
        return Result.failure(NotFoundError(code="article_not_found", message="article not found"))
    return Result.success(article)


def create_submission(
    ctx,
    session,
    org,
    user_id: str | None,
    *,
    article_id,
    outputs: dict[OutputKind, bool],
    language: str | None = None,
    script_approval: bool = True,
    video: dict[str, Any] | None = None,
    podcast: dict[str, Any] | None = None,
    audio: dict[str, Any] | None = None,
    interactive_podcast: dict[str, Any] | None = None,
    quiz: dict[str, Any] | None = None,
) -> Result:
    requested = [kind for kind, wanted in outputs.items() if wanted and kind in OUTPUT_FLAGS]
    if not requested:
        return Result.failure(ValidationError(code="no_outputs", message="request at least one output"))
    found = get_article(session, org, article_id)
    if not found.ok:
        return found
    article = found.value
    parsed = _language(language or article.language)
    if not parsed.ok:
        return parsed
    video = dict(video or {})
    if OutputKind.VIDEO in requested:
        asset_error = _asset_error(session, org.id, video)
        if asset_error is not None:
            return Result.failure(asset_error)
    question_count = int((quiz or {}).get("question_count") or 5)
    if not 1 <= question_count <= 20:
        return Result.failure(ValidationError(code="invalid_option", message="question_count must be between 1 and 20"))

    submission = Submission(
        organization_id=org.id,
        article_id=article.id,
        language=parsed.value,
        script_approval=script_approval,
        status="PENDING",
        created_by=user_id,
    )
    for kind in requested:
        setattr(submission, OUTPUT_FLAGS[kind], True)
    session.add(submission)
    session.flush()

    children: list[tuple[OutputKind, Any]] = []
    for kind in requested:
        if kind == OutputKind.VIDEO:
            child = VideoOutput(
                submission_id=submission.id,
                generate_bubbles=bool(video.get("generate_bubbles")),
                **_video_values(video),
            )
        elif kind == OutputKind.PODCAST:
            child = PodcastOutput(
                submission_id=submission.id,
                host_voice_id=(podcast or {}).get("host_voice_id"),
                guest_voice_id=(podcast or {}).get("guest_voice_id"),
            )
        elif kind == OutputKind.AUDIO:
            child = AudioOutput(submission_id=submission.id, voice_id=(audio or {}).get("voice_id"))
        elif kind == OutputKind.INTERACTIVE_PODCAST:
            child = InteractivePodcastOutput(
                submission_id=submission.id, voice_id=(interactive_podcast or {}).get("voice_id")
            )
        else:
            child = QuizOutput(submission_id=submission.id, question_count=question_count)
        child.status = "PENDING"
        session.add(child)
        children.append((kind, child))
    session.commit()
    logger.info("submission %s created with %s", submission.id, ",".join(kind.value for kind in requested))

    failure = None
    for kind, child in children:
        entity = session.get(model_for(kind), child.id)
        transition = state_machine.start(kind, entity, job_id=str(uuid4()), organization_id=org.id).unwrap()
        started = _begin(ctx, session, transition)
        if not started.ok:
            failure = started
    if failure is not None:
        return failure
    return Result.success(session.get(Submission, submission.id))


def get_submission(session, org, submission_id) -> Result:
    submission = session.get(Submission, submission_id)
    if submission is None or submission.organization_id != org.id:
        return Result.failure(NotFoundError(code="submission_not_found", message="submission not found"))
    return Result.success(submission)


def submission_outputs(session, submission: Submission) -> dict[str, Any]:
    outputs: dict[str, Any] = {}
    for flag, kind, model in SUBMISSION_CHILDREN:
        if not getattr(submission, flag):
            continue
        outputs[kind.value] = session.execute(
            select(model).where(model.submission_id == submission.id)
        ).scalar_one_or_none()
    return outputs


def load_output(session, org, submission_id, kind: OutputKind, output_id) -> Result:
    found = get_submission(session, org, submission_id)
    if not found.ok:
        return found
    entity = session.get(model_for(kind), output_id)
    if entity is None or entity.submission_id != found.value.id:
        return Result.failure(NotFoundError(code="output_not_found", message=f"{kind.value} output not found"))
    return Result.success(entity)


def update_script(ctx, session, org, submission_id, kind: OutputKind, output_id, script: str) -> Result:
    found = load_output(session, org, submission_id, kind, output_id)
    if not found.ok:
        return found
    result = state_machine.edit_script(kind, found.value, script=script)
    if not result.ok:
        return result
    if not apply_transition(ctx, session, result.value):
        return Result.failure(
            InvalidStateTransition(code="invalid_state_transition", message="output changed concurrently")
        )
    return Result.success(session.get(model_for(kind), output_id))


def generate_media(ctx, session, org, submission_id, kind: OutputKind, output_id) -> Result:
    found = load_output(session, org, submission_id, kind, output_id)
    if not found.ok:
        return found
    result = state_machine.request_media(kind, found.value, job_id=str(uuid4()), organization_id=org.id)
    if not result.ok:
        return result
    return _begin(ctx, session, result.value)


def regenerate_output(ctx, session, org, submission_id, kind: OutputKind, output_id) -> Result:
    found = load_output(session, org, submission_id, kind, output_id)
    if not found.ok:
        return found
    result = state_machine.regenerate(kind, found.value, job_id=str(uuid4()), organization_id=org.id)
    if not result.ok:
        return result
    return _begin(ctx, session, result.value)


def create_standalone_video(
    ctx,
    session,
    org,
    user_id: str | None,
    *,
    title: str,
    script: str,
    language: str | None = None,
    video: dict[str, Any] | None = None,
) -> Result:
    if not (title or "").strip():
        return Result.failure(ValidationError(code="invalid_video", message="title is required"))
    if not (script or "").strip():
        return Result.failure(ValidationError(code="script_required", message="script must not be empty"))
    parsed = _language(language)
    if not parsed.ok:
        return parsed
    video = dict(video or {})
    asset_error = _asset_error(session, org.id, video)
    if asset_error is not None:
        return Result.failure(asset_error)

    entity = StandaloneVideo(
        organization_id=org.id,
        title=title.strip(),
        script=script,
        language=parsed.value,
        status="PENDING",
        created_by=user_id,
        **_video_values(video),
    )
    session.add(entity)
    session.commit()

    entity = session.get(StandaloneVideo, entity.id)
    transition = state_machine.start(
        OutputKind.STANDALONE_VIDEO, entity, job_id=str(uuid4()), organization_id=org.id
    ).unwrap()
    return _begin(ctx, session, transition)


def get_standalone_video(session, org, video_id) -> Result:
    entity = session.get(StandaloneVideo, video_id)
    if entity is None or entity.organization_id != org.id:
        return Result.failure(NotFoundError(code="video_not_found", message="video not found"))
    return Result.success(entity)


def regenerate_standalone(ctx, session, org, video_id) -> Result:
    found = get_standalone_video(session, org, video_id)
    if not found.ok:
        return found
    result = state_machine.regenerate(
        OutputKind.STANDALONE_VIDEO, found.value, job_id=str(uuid4()), organization_id=org.id
    )
    if not result.ok:
        return result
    return _begin(ctx, session, result.value)


def list_standalone_videos(session, org, *, limit: int = 50, offset: int = 0) -> list[StandaloneVideo]:
    return list(
        session.execute(
            select(StandaloneVideo)
            .where(StandaloneVideo.organization_id == org.id)
            .order_by(desc(StandaloneVideo.created_at))
            .limit(limit)
            .offset(offset)
        ).scalars()
    )


def regenerate_podcast_script(ctx, session, org, submission_id, output_id, custom_prompt: str | None = None) -> Result:
    """Rewrite an existing podcast transcript in place, steered by an optional prompt.

    The output stays in SCRIPT_READY; media generation still needs a separate request.
    """
    found = load_output(session, org, submission_id, OutputKind.PODCAST, output_id)
    if not found.ok:
        return found
    podcast = found.value
    if not (podcast.script or "").strip():
        return Result.failure(
            ValidationError(code="script_required", message="podcast has no transcript to regenerate")
        )
    guard = state_machine.edit_script(OutputKind.PODCAST, podcast, script=podcast.script)
    if not guard.ok:
        return guard

    submission = session.get(Submission, podcast.submission_id)
    article = session.get(Article, submission.article_id)
    try:
        script = ctx.providers.script.regenerate_podcast_transcript(
            original=podcast.script,
            guidance=(custom_prompt or "").strip() or None,
            title=article.title,
            content=article.content,
            language=submission.language,
        ).result
    except ProviderError as exc:
        logger.warning("podcast %s script regeneration failed: %s", podcast.id, exc)
        return Result.failure(exc)

    return update_script(ctx, session, org, submission_id, OutputKind.PODCAST, output_id, script)
