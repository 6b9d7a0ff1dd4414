from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import UUID, uuid4

from db.models import Article, Submission, VideoOutput
from db.repository import update_if_current
from pipeline import state_machine
from pipeline.effects import apply_or_fail, apply_transition, claim_for_job, model_for
from pipeline.errors import NotFoundError, ProviderError, ValidationError
from pipeline.postprocess import build_plan
from pipeline.reconciler import ResolvedEntity, describe_entity, resolve_entity
from pipeline.state_machine import OutputKind, OutputStatus
from providers.storage import media_key

logger = logging.getLogger(__name__)

JOB_KINDS = {
    "generate-video-script": OutputKind.VIDEO,
    "generate-video-from-script": OutputKind.VIDEO,
    "generate-podcast-transcript": OutputKind.PODCAST,
    "generate-podcast-from-transcript": OutputKind.PODCAST,
    "generate-interactive-podcast": OutputKind.INTERACTIVE_PODCAST,
    "generate-audio": OutputKind.AUDIO,
    "generate-quiz": OutputKind.QUIZ,
    "generate-standalone-video": OutputKind.STANDALONE_VIDEO,
    "post-process-video-output": OutputKind.VIDEO,
    "post-process-standalone-video": OutputKind.STANDALONE_VIDEO,
}

MEDIA_FOLDERS = {
    OutputKind.VIDEO: "videos",
    OutputKind.PODCAST: "podcasts",
    OutputKind.INTERACTIVE_PODCAST: "interactive-podcasts",
    OutputKind.AUDIO: "audio",
    OutputKind.QUIZ: "quizzes",
    OutputKind.STANDALONE_VIDEO: "standalone-videos",
}

TRANSCRIPT_UNAVAILABLE = "Transcript not available"


def _uuid(payload: dict, key: str) -> UUID:
    try:
        return UUID(str(payload[key]))
    except (KeyError, ValueError) as exc:
        raise ValidationError(code="invalid_payload", message=f"payload needs a valid {key}") from exc


def entity_id_from_payload(job_type: str, payload: dict) -> UUID:
    kind = JOB_KINDS[job_type]
    if job_type.startswith("post-process"):
        return _uuid(payload, "entityId")
    if kind == OutputKind.STANDALONE_VIDEO:
        return _uuid(payload, "standaloneVideoId")
    return _uuid(payload, "outputId")


def _claim(session, kind: OutputKind, entity_id: UUID, job_id: str):
    model = model_for(kind)
    if session.get(model, entity_id) is None:
        raise NotFoundError(code="entity_not_found", message=f"{kind.value} {entity_id} not found")
    if not claim_for_job(session, kind, entity_id, job_id):
        logger.info("job %s does not own %s %s; skipping", job_id, kind.value, entity_id)
        return None
    return session.get(model, entity_id)


def _source(session, entity) -> tuple[Submission, Article]:
    submission = session.get(Submission, entity.submission_id)
    if submission is None:
        raise NotFoundError(code="submission_not_found", message=f"submission {entity.submission_id} not found")
    article = session.get(Article, submission.article_id)
    if article is None:
        raise NotFoundError(code="article_not_found", message=f"article {submission.article_id} not found")
    return submission, article


def _complete(ctx, session, kind: OutputKind, entity, job_id: str, artifacts: dict[str, Any]) -> dict:
    transition = state_machine.complete(
        kind, entity, artifacts=artifacts, guards={"generation_token": job_id}
    ).unwrap()
    applied = apply_transition(ctx, session, transition)
    return {"status": OutputStatus.COMPLETED.value if applied else "stale"}


def _synthesize(ctx, text: str, voice_id: str | None):
    return ctx.providers.voice.synthesize(text=text, voice_id=voice_id).result


def _generate_script(ctx, session, job_id: str, payload: dict, kind: OutputKind) -> dict:
    entity = _claim(session, kind, _uuid(payload, "outputId"), job_id)
    if entity is None:
        return {"skipped": True}
    submission, article = _source(session, entity)
    writer = ctx.providers.script
    generate = writer.video_script if kind == OutputKind.VIDEO else writer.podcast_transcript
    script = generate(title=article.title, content=article.content, language=submission.language).result

    transition = state_machine.script_ready(kind, entity, script=script, job_id=job_id).unwrap()
    if not apply_transition(ctx, session, transition):
        return {"status": "stale"}

    if not submission.script_approval:
        entity = session.get(model_for(kind), entity.id)
        follow = state_machine.request_media(
            kind, entity, job_id=str(uuid4()), organization_id=submission.organization_id
        ).unwrap()
        apply_or_fail(ctx, session, follow)
        return {"status": OutputStatus.PROCESSING.value, "chained": True}
    return {"status": OutputStatus.SCRIPT_READY.value}


def generate_video_script(ctx, session, job_id: str, payload: dict) -> dict:
    return _generate_script(ctx, session, job_id, payload, OutputKind.VIDEO)


def generate_podcast_transcript(ctx, session, job_id: str, payload: dict) -> dict:
    return _generate_script(ctx, session, job_id, payload, OutputKind.PODCAST)


def _store_provider_handle(session, kind: OutputKind, entity_id, job_id: str, values: dict) -> bool:
    stored = update_if_current(
        session,
        model_for(kind),
        entity_id,
        (OutputStatus.PROCESSING.value,),
        values,
        guards={"generation_token": job_id},
    )
    session.commit()
    if not stored:
        logger.warning(
            "%s %s: job %s was superseded, discarding provider handle %s",
            kind.value,
            entity_id,
            job_id,
            values.get("heygen_video_id"),
        )
    return stored


def generate_video_from_script(ctx, session, job_id: str, payload: dict) -> dict:
    entity = _claim(session, OutputKind.VIDEO, _uuid(payload, "outputId"), job_id)
    if entity is None:
        return {"skipped": True}
    _submission, article = _source(session, entity)
    if not (entity.script or "").strip():
        raise ValidationError(code="script_required", message="video script is empty")
    handle = ctx.providers.avatar.generate(
        title=article.title,
        character_id=entity.character_id,
        character_type=entity.character_type,
        script=entity.script,
        voice_id=entity.voice_id,
    )
    stored = _store_provider_handle(
        session, OutputKind.VIDEO, entity.id, job_id, {"heygen_video_id": handle.provider_handle}
    )
    return {"heygen_video_id": handle.provider_handle, "stored": stored}


def _podcast_lines(script: str) -> list[tuple[str, str]]:
    lines: list[tuple[str, str]] = []
    for raw in (script or "").splitlines():
        text = raw.strip()
        if not text:
            continue
        speaker = "HOST"
        head, sep, rest = text.partition(":")
        if sep and head.strip().upper() in {"HOST", "GUEST"}:
            speaker, text = head.strip().upper(), rest.strip()
        if text:
            lines.append((speaker, text))
    return lines


def generate_podcast_from_transcript(ctx, session, job_id: str, payload: dict) -> dict:
    entity = _claim(session, OutputKind.PODCAST, _uuid(payload, "outputId"), job_id)
    if entity is None:
        return {"skipped": True}
    submission, _article = _source(session, entity)
    lines = _podcast_lines(entity.script)
    if not lines:
        raise ValidationError(code="script_required", message="podcast transcript is empty")

    chunks: list[bytes] = []
    duration = 0
    for speaker, text in lines:
        voice = entity.guest_voice_id if speaker == "GUEST" else entity.host_voice_id
        speech = _synthesize(ctx, text, voice)
        chunks.append(speech.data)
        duration += speech.estimated_duration

    stored = ctx.storage.upload_bytes(
        media_key(submission.organization_id, "podcasts", entity.id, "podcast.mp3"),
        b"".join(chunks),
        "audio/mpeg",
    )
    return _complete(
        ctx, session, OutputKind.PODCAST, entity, job_id, {"audio_url": stored.url, "duration": duration}
    )


def generate_audio(ctx, session, job_id: str, payload: dict) -> dict:
    entity = _claim(session, OutputKind.AUDIO, _uuid(payload, "outputId"), job_id)
    if entity is None:
        return {"skipped": True}
    submission, article = _source(session, entity)
    script = ctx.providers.script.audio_script(
        title=article.title, content=article.content, language=submission.language
    ).result
    if not script:
        raise ValidationError(code="empty_script", message="generated narration is empty")
    speech = _synthesize(ctx, script, entity.voice_id)
    stored = ctx.storage.upload_bytes(
        media_key(submission.organization_id, "audio", entity.id, "narration.mp3"),
        speech.data,
        speech.content_type,
    )
    return _complete(
        ctx,
        session,
        OutputKind.AUDIO,
        entity,
        job_id,
        {"script": script, "audio_url": stored.url, "duration": speech.estimated_duration},
    )


def generate_quiz(ctx, session, job_id: str, payload: dict) -> dict:
    entity = _claim(session, OutputKind.QUIZ, _uuid(payload, "outputId"), job_id)
    if entity is None:
        return {"skipped": True}
    submission, article = _source(session, entity)
    questions = ctx.providers.script.quiz(
        title=article.title,
        content=article.content,
        language=submission.language,
        question_count=entity.question_count or 5,
    ).result
    if not questions:
        raise ValidationError(code="empty_quiz", message="no quiz questions were generated")
    return _complete(ctx, session, OutputKind.QUIZ, entity, job_id, {"questions": questions})


def generate_interactive_podcast(ctx, session, job_id: str, payload: dict) -> dict:
    entity = _claim(session, OutputKind.INTERACTIVE_PODCAST, _uuid(payload, "outputId"), job_id)
    if entity is None:
        return {"skipped": True}
    submission, article = _source(session, entity)
    segments = ctx.providers.script.interactive_podcast(
        title=article.title, content=article.content, language=submission.language
    ).result
    if not segments:
        raise ValidationError(code="empty_script", message="no podcast segments were generated")
    narration = "\n\n".join(
        " ".join(part for part in (segment.get("text"), segment.get("question")) if part)
        for segment in segments
    )
    speech = _synthesize(ctx, narration, entity.voice_id)
    stored = ctx.storage.upload_bytes(
        media_key(submission.organization_id, "interactive-podcasts", entity.id, "episode.mp3"),
        speech.data,
        speech.content_type,
    )
    return _complete(
        ctx,
        session,
        OutputKind.INTERACTIVE_PODCAST,
        entity,
        job_id,
        {"segments": segments, "audio_url": stored.url, "duration": speech.estimated_duration},
    )


def generate_standalone_video(ctx, session, job_id: str, payload: dict) -> dict:
    entity = _claim(session, OutputKind.STANDALONE_VIDEO, _uuid(payload, "standaloneVideoId"), job_id)
    if entity is None:
        return {"skipped": True}
    speech = _synthesize(ctx, entity.script, entity.voice_id)
    audio = ctx.storage.upload_bytes(
        media_key(entity.organization_id, "standalone-videos", entity.id, "voice.mp3"),
        speech.data,
        speech.content_type,
    )
    handle = ctx.providers.avatar.generate(
        title=entity.title,
        character_id=entity.character_id,
        character_type=entity.character_type,
        audio_url=audio.url,
    )
    stored = _store_provider_handle(
        session,
        OutputKind.STANDALONE_VIDEO,
        entity.id,
        job_id,
        {"heygen_video_id": handle.provider_handle, "audio_url": audio.url},
    )
    return {"heygen_video_id": handle.provider_handle, "stored": stored}


def _post_process(ctx, session, job_id: str, payload: dict, kind: OutputKind) -> dict:
    entity_id = _uuid(payload, "entityId")
    edited_url = payload.get("editedVideoUrl")
    if not edited_url:
        raise ValidationError(code="invalid_payload", message="payload needs editedVideoUrl")
    model = model_for(kind)
    entity = session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(code="entity_not_found", message=f"{kind.value} {entity_id} not found")
    if entity.status != OutputStatus.PROCESSING.value or entity.edited_video_url != edited_url:
        logger.info("%s %s: post-processing no longer expected; skipping", kind.value, entity_id)
        return {"skipped": True}

    details = describe_entity(session, ResolvedEntity(kind, entity))
    organization_id = payload.get("organizationId") or details.organization_id
    plan = build_plan(session, entity)
    processed = ctx.post_processor.run(
        plan=plan,
        video_url=edited_url,
        output_key=media_key(organization_id, MEDIA_FOLDERS[kind], entity.id, "final-video.mp4"),
    )
    ctx.queue.enqueue(
        "process-video-completion",
        {"providerVideoId": entity.heygen_video_id, "videoUrl": processed.url},
    )
    return {"videoUrl": processed.url, "duration": processed.duration}


def post_process_video_output(ctx, session, job_id: str, payload: dict) -> dict:
    return _post_process(ctx, session, job_id, payload, OutputKind.VIDEO)


def post_process_standalone_video(ctx, session, job_id: str, payload: dict) -> dict:
    return _post_process(ctx, session, job_id, payload, OutputKind.STANDALONE_VIDEO)


def process_video_completion(ctx, session, job_id: str, payload: dict) -> dict:
    """Final stage shared by the direct and post-processed paths."""
    provider_video_id = payload.get("providerVideoId")
    video_url = payload.get("videoUrl")
    if not provider_video_id or not video_url:
        raise ValidationError(code="invalid_payload", message="payload needs providerVideoId and videoUrl")

    resolved = resolve_entity(session, "heygen_video_id", provider_video_id)
    if resolved is None:
        logger.warning("completion for unknown provider video %s", provider_video_id)
        return {"skipped": "not_found"}
    entity = resolved.entity
    if entity.status != OutputStatus.PROCESSING.value:
        logger.info("%s %s already %s; skipping completion", resolved.kind.value, entity.id, entity.status)
        return {"skipped": entity.status}

    details = describe_entity(session, resolved)
    folder = MEDIA_FOLDERS[resolved.kind]
    final = ctx.storage.locate(media_key(details.organization_id, folder, entity.id, "final-video.mp4"))
    if video_url == final.url:
        stored = final
    else:
        stored = ctx.storage.upload_from_url(
            media_key(details.organization_id, folder, entity.id, "video.mp4"), video_url, "video/mp4"
        )

    try:
        transcript = ctx.providers.transcription.transcribe(
            media_uri=stored.internal_url, language=details.language
        ).result
        text = transcript.text or TRANSCRIPT_UNAVAILABLE
        word_timings = transcript.word_timings
        duration = transcript.duration or ctx.settings.transcript_fallback_duration_s
    except ProviderError as exc:
        logger.warning("%s %s: transcription failed (%s); using fallback", resolved.kind.value, entity.id, exc)
        text = TRANSCRIPT_UNAVAILABLE
        word_timings = []
        duration = ctx.settings.transcript_fallback_duration_s

    artifacts: dict[str, Any] = {
        "video_url": stored.url,
        "duration": duration,
        "transcript": text,
        "word_timings": word_timings,
    }

    if isinstance(entity, VideoOutput) and entity.generate_bubbles and word_timings:
        try:
            artifacts["bubbles"] = ctx.providers.script.bubbles(
                transcript=text, word_timings=word_timings
            ).result
        except ProviderError as exc:
            logger.warning("video %s: bubble generation failed (%s)", entity.id, exc)

    try:
        image = ctx.providers.thumbnail.generate(title=details.title).result
        thumbnail = ctx.storage.upload_bytes(
            media_key(details.organization_id, folder, entity.id, "thumbnail.png"), image, "image/png"
        )
        artifacts["thumbnail_url"] = thumbnail.url
    except ProviderError as exc:
        logger.warning("%s %s: thumbnail generation failed (%s)", resolved.kind.value, entity.id, exc)

    transition = state_machine.complete(
        resolved.kind, entity, artifacts=artifacts, guards={"heygen_video_id": provider_video_id}
    ).unwrap()
    applied = apply_transition(ctx, session, transition)
    return {"status": OutputStatus.COMPLETED.value if applied else "stale", "videoUrl": stored.url}


def generate_article_thumbnail(ctx, session, job_id: str, payload: dict) -> dict:
    article_id = _uuid(payload, "articleId")
    article = session.get(Article, article_id)
    if article is None:
        logger.info("article %s is gone; skipping thumbnail", article_id)
        return {"skipped": True}
    image = ctx.providers.thumbnail.generate(title=payload.get("title") or article.title).result
    stored = ctx.storage.upload_bytes(
        media_key(payload.get("organizationId") or article.organization_id, "articles", article.id, "thumbnail.png"),
        image,
        "image/png",
    )
    article.thumbnail_url = stored.url
    session.add(article)
    session.commit()
    return {"thumbnail_url": stored.url}


HANDLERS: dict[str, Callable[..., dict]] = {
    "generate-video-script": generate_video_script,
    "generate-video-from-script": generate_video_from_script,
    "generate-podcast-transcript": generate_podcast_transcript,
    "generate-podcast-from-transcript": generate_podcast_from_transcript,
    "generate-audio": generate_audio,
    "generate-quiz": generate_quiz,
    "generate-interactive-podcast": generate_interactive_podcast,
    "generate-standalone-video": generate_standalone_video,
    "post-process-video-output": post_process_video_output,
    "post-process-standalone-video": post_process_standalone_video,
    "process-video-completion": process_video_completion,
    "generate-article-thumbnail": generate_article_thumbnail,
}


def entity_for_job(session, job_type: str, payload: dict, job_id: str | None = None):
    """Which entity a failed job should mark FAILED, and the guard that proves it still owns it."""
    if job_type == "process-video-completion":
        handle = payload.get("providerVideoId")
        resolved = resolve_entity(session, "heygen_video_id", handle) if handle else None
        return resolved, {"heygen_video_id": handle}
    kind = JOB_KINDS.get(job_type)
    if kind is None:
        return None, {}
    try:
        entity_id = entity_id_from_payload(job_type, payload)
    except ValidationError:
        return None, {}
    entity = session.get(model_for(kind), entity_id)
    if entity is None:
        return None, {}

    if job_type.startswith("post-process"):
        return ResolvedEntity(kind, entity), {"edited_video_url": payload.get("editedVideoUrl")}
    return ResolvedEntity(kind, entity), {"generation_token": job_id}
