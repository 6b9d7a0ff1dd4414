from __future__ import annotations

import hashlib
import hmac
import json
from uuid import UUID, uuid4

from fastapi import HTTPException
from fastapi.testclient import TestClient
import jwt
import pytest

import api.main as api_main
from db.models import CaptionStyle, Membership, Organization, PodcastOutput, StandaloneVideo, VideoBumper, VideoOutput

from conftest import add_submission


@pytest.fixture
def client(ctx):
    api_main.app.dependency_overrides[api_main.get_pipeline_context] = lambda: ctx
    yield TestClient(api_main.app)
    api_main.app.dependency_overrides.clear()


def _expect_http(status: int, detail: str, fn, *args, **kwargs) -> None:
    with pytest.raises(HTTPException) as excinfo:
        fn(*args, **kwargs)
    assert excinfo.value.status_code == status
    assert excinfo.value.detail == detail


def test_current_user_requires_configured_secret(monkeypatch) -> None:
    monkeypatch.delenv("AUTH_JWT_SECRET", raising=False)
    _expect_http(503, "auth_not_configured", api_main._current_user, authorization="Bearer x")


def test_current_user_reads_subject_from_token(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_JWT_SECRET", "test-secret")
    token = jwt.encode({"sub": "user-1", "aud": "authenticated"}, "test-secret", algorithm="HS256")

    assert api_main._current_user(authorization=f"Bearer {token}") == "user-1"
    _expect_http(401, "auth_required", api_main._current_user, authorization=None)

    forged = jwt.encode({"sub": "user-1", "aud": "authenticated"}, "other-secret", algorithm="HS256")
    _expect_http(401, "invalid_token", api_main._current_user, authorization=f"Bearer {forged}")

    anonymous = jwt.encode({"aud": "authenticated"}, "test-secret", algorithm="HS256")
    _expect_http(401, "invalid_token", api_main._current_user, authorization=f"Bearer {anonymous}")


def test_create_article_for_member(ctx, org) -> None:
    payload = api_main.create_article(
        "daily-news",
        api_main.ArticleRequest(title="Budget passes", content="Parliament approved the budget.", language="HINDI"),
        user_id="user-1",
        ctx=ctx,
    )

    assert payload["title"] == "Budget passes"
    assert payload["language"] == "HINDI"
    assert payload["organization_id"] == str(org.id)
    assert [job[0] for job in ctx.queue.jobs] == ["generate-article-thumbnail"]


def test_non_member_and_unknown_org_are_rejected(ctx, org) -> None:
    request = api_main.ArticleRequest(title="t", content="c")
    _expect_http(403, "forbidden", api_main.create_article, "daily-news", request, user_id="user-2", ctx=ctx)
    _expect_http(404, "organization_not_found", api_main.create_article, "nowhere", request, user_id="user-1", ctx=ctx)


def test_create_submission_returns_outputs(ctx, org, article) -> None:
    payload = api_main.create_submission(
        "daily-news",
        api_main.SubmissionRequest(
            article_id=article.id,
            generate_video=True,
            generate_quiz=True,
            video=api_main.VideoOptions(voice_id="voice-9", enable_magic_zooms=True),
            quiz=api_main.QuizOptions(question_count=7),
        ),
        user_id="user-1",
        ctx=ctx,
    )

    assert payload["status"] == "PROCESSING"
    assert set(payload["outputs"]) == {"video", "quiz"}
    assert payload["outputs"]["video"]["voice_id"] == "voice-9"
    assert payload["outputs"]["video"]["enable_magic_zooms"] is True
    assert payload["outputs"]["quiz"]["question_count"] == 7
    assert payload["outputs"]["quiz"]["status"] == "PROCESSING"


def test_create_submission_without_outputs_is_400(ctx, org, article) -> None:
    _expect_http(
        400,
        "no_outputs",
        api_main.create_submission,
        "daily-news",
        api_main.SubmissionRequest(article_id=article.id),
        user_id="user-1",
        ctx=ctx,
    )


def test_create_submission_reports_queue_outage_as_503(ctx, org, article) -> None:
    ctx.queue.fail = True
    _expect_http(
        503,
        "queue_unavailable",
        api_main.create_submission,
        "daily-news",
        api_main.SubmissionRequest(article_id=article.id, generate_audio=True),
        user_id="user-1",
        ctx=ctx,
    )


def test_generate_media_on_pending_output_is_400(ctx, session, org, article) -> None:
    video = VideoOutput(status="PENDING")
    submission = add_submission(session, org, article, {"video": video}, generate_video=True)

    _expect_http(
        400,
        "invalid_state_transition",
        api_main.generate_media,
        "daily-news",
        submission.id,
        "video",
        video.id,
        user_id="user-1",
        ctx=ctx,
    )


def test_output_kind_in_path_accepts_dashes_only_for_known_kinds(ctx, session, org, article) -> None:
    assert api_main._kind("interactive-podcast").value == "interactive_podcast"
    _expect_http(400, "unknown_output_kind", api_main._kind, "standalone-video")
    _expect_http(400, "unknown_output_kind", api_main._kind, "gif")


def test_standalone_video_create_and_fetch(ctx, org) -> None:
    created = api_main.create_standalone_video(
        "daily-news",
        api_main.StandaloneVideoRequest(title="Explainer", script="Here is the story.", character_id="avatar-1"),
        user_id="user-1",
        ctx=ctx,
    )

    assert created["status"] == "PROCESSING"
    assert created["character_id"] == "avatar-1"
    assert ctx.queue.jobs[0][0] == "generate-standalone-video"

    video_id = UUID(created["id"])
    fetched = api_main.get_standalone_video("daily-news", video_id, user_id="user-1", ctx=ctx)
    assert fetched["title"] == "Explainer"
    _expect_http(
        400, "invalid_state_transition", api_main.regenerate_standalone_video, "daily-news", video_id, user_id="user-1", ctx=ctx
    )


def test_dead_jobs_require_operator_token(monkeypatch) -> None:
    monkeypatch.setenv("OPERATOR_TOKEN", "sekret")
    _expect_http(401, "operator_token_required", api_main._require_operator, x_operator_token="nope")
    assert api_main._require_operator(x_operator_token="sekret") is None


def test_submagic_webhook_requires_project_id(client) -> None:
    response = client.post("/webhooks/submagic", json={"status": "completed"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing project ID"}

    garbage = client.post("/webhooks/submagic", content=b"not json", headers={"content-type": "application/json"})
    assert garbage.status_code == 400


def test_submagic_webhook_acknowledges_unknown_project(client) -> None:
    response = client.post("/webhooks/submagic", json={"projectId": "sm-404", "directUrl": "https://x/v.mp4"})
    assert response.status_code == 200
    assert response.json() == {"success": True}


def test_heygen_webhook_without_secret_is_500(client, monkeypatch) -> None:
    monkeypatch.delenv("HEYGEN_WEBHOOK_SECRET", raising=False)
    response = client.post("/webhooks/heygen", json={"event_type": "avatar_video.success"})
    assert response.status_code == 500
    assert response.json() == {"error": "Webhook secret not configured"}


def test_heygen_webhook_checks_signature(client, ctx, session, org, article, monkeypatch) -> None:
    monkeypatch.setenv("HEYGEN_WEBHOOK_SECRET", "hook-secret")
    video = VideoOutput(status="PROCESSING", heygen_video_id="hg-1", enable_captions=False)
    add_submission(session, org, article, {"video": video}, generate_video=True, status="PROCESSING")
    body = json.dumps(
        {"event_type": "avatar_video.success", "event_data": {"video_id": "hg-1", "url": "https://heygen.test/v.mp4"}}
    ).encode("utf-8")

    rejected = client.post("/webhooks/heygen", content=body, headers={"signature": "deadbeef"})
    assert rejected.status_code == 401
    assert rejected.json() == {"error": "Invalid signature"}
    assert ctx.queue.jobs == []

    signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()
    accepted = client.post("/webhooks/heygen", content=body, headers={"signature": signature})
    assert accepted.status_code == 200
    assert accepted.json() == {"success": True}
    assert ctx.queue.jobs[0][0] == "process-video-completion"


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_app_builds_its_context_on_startup(ctx, monkeypatch) -> None:
    monkeypatch.setattr(api_main, "build_context", lambda: ctx)

    with TestClient(api_main.app) as client:
        assert api_main.app.state.pipeline_context is ctx
        response = client.post("/webhooks/submagic", json={"projectId": "sm-404", "directUrl": "https://x/v.mp4"})
        assert response.status_code == 200

    assert api_main.app.state.pipeline_context is None


def test_bumpers_are_created_and_filtered_by_position(ctx, org) -> None:
    for name, position in (("Outro", "end"), ("Intro", "start"), ("Sting", "both")):
        api_main.create_bumper(
            "daily-news",
            api_main.BumperRequest(
                name=name,
                media_type="video",
                position=position,
                media_url=f"https://assets.test/{name}.mp4",
                duration=3,
            ),
            user_id="user-1",
            ctx=ctx,
        )

    listed = api_main.list_bumpers("daily-news", user_id="user-1", ctx=ctx)
    assert [row["name"] for row in listed] == ["Intro", "Outro", "Sting"]
    start = api_main.list_bumpers("daily-news", position="start", user_id="user-1", ctx=ctx)
    assert [(row["name"], row["position"]) for row in start] == [("Intro", "start")]

    bad_url = api_main.BumperRequest(name="Broken", media_type="image", media_url="ftp://assets.test/x.png")
    _expect_http(400, "invalid_asset", api_main.create_bumper, "daily-news", bad_url, user_id="user-1", ctx=ctx)
    _expect_http(403, "forbidden", api_main.list_bumpers, "daily-news", user_id="user-2", ctx=ctx)


def test_end_bumper_cannot_open_a_video(ctx, session, org, article) -> None:
    outro = VideoBumper(
        organization_id=org.id, name="Outro", media_url="https://assets.test/o.mp4", media_type="video", position="end"
    )
    session.add(outro)
    session.commit()

    _expect_http(
        400,
        "invalid_asset",
        api_main.create_submission,
        "daily-news",
        api_main.SubmissionRequest(
            article_id=article.id, generate_video=True, video=api_main.VideoOptions(start_bumper_id=outro.id)
        ),
        user_id="user-1",
        ctx=ctx,
    )
    created = api_main.create_submission(
        "daily-news",
        api_main.SubmissionRequest(
            article_id=article.id, generate_video=True, video=api_main.VideoOptions(end_bumper_id=outro.id)
        ),
        user_id="user-1",
        ctx=ctx,
    )
    assert created["outputs"]["video"]["end_bumper_id"] == str(outro.id)


def test_background_music_and_caption_styles(ctx, session, org) -> None:
    session.add(CaptionStyle(organization_id=None, name="Classic", template_name="Hormozi 2"))
    session.commit()

    music = api_main.create_background_music(
        "daily-news",
        api_main.BackgroundMusicRequest(name="Calm bed", audio_url="https://assets.test/calm.mp3", volume=0.2),
        user_id="user-1",
        ctx=ctx,
    )
    assert music["volume"] == 0.2
    listed = api_main.list_background_music("daily-news", user_id="user-1", ctx=ctx)
    assert [row["name"] for row in listed] == ["Calm bed"]

    api_main.create_caption_style(
        "daily-news",
        api_main.CaptionStyleRequest(name="Bold", user_theme_id="theme-7"),
        user_id="user-1",
        ctx=ctx,
    )
    styles = api_main.list_caption_styles("daily-news", user_id="user-1", ctx=ctx)
    assert [(row["name"], row["organization_id"]) for row in styles] == [("Bold", str(org.id)), ("Classic", None)]

    _expect_http(
        400,
        "invalid_asset",
        api_main.create_caption_style,
        "daily-news",
        api_main.CaptionStyleRequest(name="Empty"),
        user_id="user-1",
        ctx=ctx,
    )


def test_standalone_videos_are_listed_per_organization(ctx, session, org) -> None:
    other = Organization(slug="other-desk", name="Other Desk")
    session.add(other)
    session.flush()
    session.add(StandaloneVideo(organization_id=other.id, title="Elsewhere", script="x", status="PENDING"))
    session.commit()
    for title in ("First", "Second"):
        api_main.create_standalone_video(
            "daily-news",
            api_main.StandaloneVideoRequest(title=title, script="Here is the story."),
            user_id="user-1",
            ctx=ctx,
        )

    listed = api_main.list_standalone_videos("daily-news", limit=50, offset=0, user_id="user-1", ctx=ctx)

    assert sorted(row["title"] for row in listed) == ["First", "Second"]
    assert len(api_main.list_standalone_videos("daily-news", limit=1, offset=1, user_id="user-1", ctx=ctx)) == 1


def test_podcast_script_is_regenerated_with_guidance(ctx, session, org, article) -> None:
    podcast = PodcastOutput(status="SCRIPT_READY", script="HOST: Hello.")
    submission = add_submission(session, org, article, {"podcast": podcast}, generate_podcast=True, status="PROCESSING")

    payload = api_main.regenerate_podcast_script(
        "daily-news",
        submission.id,
        podcast.id,
        api_main.PodcastScriptRequest(custom_prompt="  End with a question.  "),
        user_id="user-1",
        ctx=ctx,
    )

    assert payload["status"] == "SCRIPT_READY"
    assert payload["script"] == "HOST: Hello.\nHOST: End with a question."
    assert ctx.providers.script.guidance == "End with a question."
    assert ctx.queue.jobs == []


def test_podcast_script_regeneration_needs_an_editable_transcript(ctx, session, org, article) -> None:
    rendering = PodcastOutput(status="PROCESSING", script="HOST: Hello.")
    busy = add_submission(session, org, article, {"podcast": rendering}, generate_podcast=True, status="PROCESSING")
    empty = PodcastOutput(status="SCRIPT_READY")
    fresh = add_submission(session, org, article, {"podcast": empty}, generate_podcast=True, status="PROCESSING")
    request = api_main.PodcastScriptRequest()

    _expect_http(
        400,
        "invalid_state_transition",
        api_main.regenerate_podcast_script,
        "daily-news",
        busy.id,
        rendering.id,
        request,
        user_id="user-1",
        ctx=ctx,
    )
    _expect_http(
        400,
        "script_required",
        api_main.regenerate_podcast_script,
        "daily-news",
        fresh.id,
        empty.id,
        request,
        user_id="user-1",
        ctx=ctx,
    )
    assert "regenerate_podcast_transcript" not in ctx.providers.script.calls


def test_member_roles_are_managed_by_admins_only(ctx, session, org) -> None:
    owner = Membership(organization_id=org.id, user_id="user-3", role="OWNER")
    member = Membership(organization_id=org.id, user_id="user-2", role="MEMBER")
    session.add_all([owner, member])
    session.commit()

    listed = api_main.list_members("daily-news", user_id="user-2", ctx=ctx)
    assert [row["user_id"] for row in listed] == ["user-3", "user-1", "user-2"]

    promote = api_main.MemberRoleRequest(role="admin")
    _expect_http(
        403, "admin_required", api_main.update_member_role, "daily-news", member.id, promote, user_id="user-2", ctx=ctx
    )
    _expect_http(403, "admin_required", api_main.remove_member, "daily-news", owner.id, user_id="user-2", ctx=ctx)
    _expect_http(
        400,
        "invalid_role",
        api_main.update_member_role,
        "daily-news",
        member.id,
        api_main.MemberRoleRequest(role="SUPERUSER"),
        user_id="user-1",
        ctx=ctx,
    )

    assert api_main.update_member_role("daily-news", member.id, promote, user_id="user-1", ctx=ctx)["role"] == "ADMIN"


def test_removing_members(ctx, session, org) -> None:
    owner = Membership(organization_id=org.id, user_id="user-3", role="OWNER")
    member = Membership(organization_id=org.id, user_id="user-2", role="MEMBER")
    session.add_all([owner, member])
    session.commit()

    _expect_http(400, "cannot_remove_owner", api_main.remove_member, "daily-news", owner.id, user_id="user-1", ctx=ctx)
    _expect_http(404, "member_not_found", api_main.remove_member, "daily-news", uuid4(), user_id="user-1", ctx=ctx)
    _expect_http(
        400,
        "last_owner",
        api_main.update_member_role,
        "daily-news",
        owner.id,
        api_main.MemberRoleRequest(role="MEMBER"),
        user_id="user-1",
        ctx=ctx,
    )

    assert api_main.remove_member("daily-news", member.id, user_id="user-1", ctx=ctx) == {"removed": "user-2"}
    remaining = api_main.list_members("daily-news", user_id="user-1", ctx=ctx)
    assert [row["user_id"] for row in remaining] == ["user-3", "user-1"]
    _expect_http(403, "forbidden", api_main.list_members, "daily-news", user_id="user-2", ctx=ctx)
