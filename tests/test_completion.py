from __future__ import annotations

from db.models import BackgroundMusic, StandaloneVideo, VideoOutput
from pipeline import submissions
from pipeline.errors import ProviderError
from pipeline.handlers import TRANSCRIPT_UNAVAILABLE
from pipeline.jobs import execute_job
from providers.storage import media_key

from conftest import add_submission, reload


def run(ctx, job_type: str, payload: dict) -> dict:
    handle = ctx.queue.enqueue(job_type, payload)
    return execute_job(ctx, handle.id, job_type, payload)


def _rendered_video(session, org, article, **fields) -> VideoOutput:
    video = VideoOutput(status="PROCESSING", heygen_video_id="hg-1", **fields)
    add_submission(session, org, article, {"video": video}, generate_video=True, status="PROCESSING")
    return video


def test_completion_uploads_transcribes_and_completes(ctx, session, org, article) -> None:
    video = _rendered_video(session, org, article, edited_video_url="https://sm.test/e.mp4")

    result = run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": "https://sm.test/e.mp4"})

    key = media_key(org.id, "videos", video.id, "video.mp4")
    assert result == {"status": "COMPLETED", "videoUrl": f"https://cdn.test/{key}"}
    assert ("url", key) in ctx.storage.uploads
    assert ctx.providers.transcription.calls == [f"s3://media-test/{key}"]
    video = reload(session, video)
    assert video.status == "COMPLETED"
    assert video.video_url == f"https://cdn.test/{key}"
    assert video.word_timings[0]["word"] == "hello"
    assert video.bubbles is None


def test_transcription_failure_uses_fallback(ctx, session, org, article) -> None:
    ctx.providers.transcription.error = ProviderError(code="timeout", message="slow", provider="aws-transcribe")
    video = _rendered_video(session, org, article)

    run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": "https://heygen.test/v.mp4"})

    video = reload(session, video)
    assert video.status == "COMPLETED"
    assert video.transcript == TRANSCRIPT_UNAVAILABLE
    assert video.duration == 120
    assert video.word_timings == []


def test_bubbles_are_generated_when_requested(ctx, session, org, article) -> None:
    video = _rendered_video(session, org, article, generate_bubbles=True)

    run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": "https://heygen.test/v.mp4"})

    assert reload(session, video).bubbles == [{"text": "key phrase", "start": 0.0, "end": 1.0}]
    assert "bubbles" in ctx.providers.script.calls


def test_bubble_and_thumbnail_failures_do_not_block_completion(ctx, session, org, article) -> None:
    ctx.providers.script.bubble_error = ProviderError(code="http_500", message="down", provider="openai", retryable=True)
    ctx.providers.thumbnail.error = ProviderError(code="http_400", message="prompt rejected", provider="openai-images")
    video = _rendered_video(session, org, article, generate_bubbles=True)

    run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": "https://heygen.test/v.mp4"})

    video = reload(session, video)
    assert video.status == "COMPLETED"
    assert video.bubbles is None
    assert video.thumbnail_url is None


def test_composited_video_is_not_uploaded_twice(ctx, session, org, article) -> None:
    video = _rendered_video(session, org, article)
    final = ctx.storage.locate(media_key(org.id, "videos", video.id, "final-video.mp4"))

    run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": final.url})

    assert not any(method == "url" for method, _key in ctx.storage.uploads)
    assert ctx.providers.transcription.calls == [final.internal_url]
    assert reload(session, video).video_url == final.url


def test_completion_for_finished_or_unknown_video_is_skipped(ctx, session, org, article) -> None:
    video = VideoOutput(status="FAILED", heygen_video_id="hg-1", error="Caption editing failed: x")
    add_submission(session, org, article, {"video": video}, generate_video=True, status="FAILED")

    assert run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": "u"}) == {"skipped": "FAILED"}
    assert run(ctx, "process-video-completion", {"providerVideoId": "hg-404", "videoUrl": "u"}) == {"skipped": "not_found"}
    assert reload(session, video).status == "FAILED"
    assert ctx.storage.uploads == []


def test_post_processing_hands_final_video_to_completion(ctx, session, org, article) -> None:
    music = BackgroundMusic(organization_id=org.id, name="Bed", audio_url="https://assets.test/bed.mp3", volume=0.1)
    session.add(music)
    session.commit()
    video = _rendered_video(
        session,
        org,
        article,
        edited_video_url="https://sm.test/e.mp4",
        background_music_id=music.id,
        background_music_volume=0.25,
    )
    payload = {"entityId": str(video.id), "organizationId": str(org.id), "editedVideoUrl": "https://sm.test/e.mp4"}

    result = run(ctx, "post-process-video-output", payload)

    (call,) = ctx.post_processor.calls
    assert call["video_url"] == "https://sm.test/e.mp4"
    assert call["plan"].music_url == "https://assets.test/bed.mp3"
    assert call["plan"].music_volume == 0.25
    final_key = media_key(org.id, "videos", video.id, "final-video.mp4")
    assert call["output_key"] == final_key
    assert result["videoUrl"] == f"https://cdn.test/{final_key}"

    job_type, completion, _job_id = ctx.queue.jobs[-1]
    assert job_type == "process-video-completion"
    assert completion == {"providerVideoId": "hg-1", "videoUrl": f"https://cdn.test/{final_key}"}

    run(ctx, "process-video-completion", completion)
    video = reload(session, video)
    assert video.status == "COMPLETED"
    assert video.video_url == f"https://cdn.test/{final_key}"


def test_post_processing_for_a_replaced_edit_is_skipped(ctx, session, org, article) -> None:
    video = _rendered_video(session, org, article, edited_video_url="https://sm.test/new.mp4")
    payload = {"entityId": str(video.id), "organizationId": str(org.id), "editedVideoUrl": "https://sm.test/old.mp4"}

    assert run(ctx, "post-process-video-output", payload) == {"skipped": True}
    assert ctx.post_processor.calls == []


def test_standalone_video_generation_and_completion(ctx, session, org) -> None:
    entity = StandaloneVideo(
        organization_id=org.id,
        title="Explainer",
        script="Here is the story.",
        status="PENDING",
        character_id="anna",
        voice_id="voice-2",
    )
    session.add(entity)
    session.commit()

    result = run(ctx, "generate-standalone-video", {"standaloneVideoId": str(entity.id), "organizationId": str(org.id)})

    voice_key = media_key(org.id, "standalone-videos", entity.id, "voice.mp3")
    assert result == {"heygen_video_id": "hg-1", "stored": True}
    assert ctx.providers.voice.calls == [("Here is the story.", "voice-2")]
    call = ctx.providers.avatar.calls[0]
    assert call["audio_url"] == f"https://cdn.test/{voice_key}"
    assert call["character_id"] == "anna"
    entity = reload(session, entity)
    assert entity.status == "PROCESSING"
    assert entity.heygen_video_id == "hg-1"
    assert entity.audio_url == f"https://cdn.test/{voice_key}"

    run(ctx, "process-video-completion", {"providerVideoId": "hg-1", "videoUrl": "https://heygen.test/s.mp4"})

    entity = reload(session, entity)
    assert entity.status == "COMPLETED"
    assert entity.video_url.endswith(f"/standalone-videos/{entity.id}/video.mp4")
    assert entity.thumbnail_url.endswith("thumbnail.png")


def test_duplicate_standalone_generation_renders_once(ctx, session, org) -> None:
    created = submissions.create_standalone_video(
        ctx, session, org, "user-1", title="Explainer", script="Here is the story.", video={"character_id": "anna"}
    )
    (_type, payload, owner_id) = ctx.queue.jobs[0]
    duplicate = ctx.queue.enqueue("generate-standalone-video", payload)

    assert execute_job(ctx, duplicate.id, "generate-standalone-video", payload) == {"skipped": True}
    assert execute_job(ctx, owner_id, "generate-standalone-video", payload) == {"heygen_video_id": "hg-1", "stored": True}

    assert len(ctx.providers.avatar.calls) == 1
    assert len(ctx.providers.voice.calls) == 1
    entity = reload(session, created.value)
    assert entity.status == "PROCESSING"
    assert entity.generation_token == owner_id
    assert entity.heygen_video_id == "hg-1"
