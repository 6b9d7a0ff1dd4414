from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import json
import logging
from os import getenv
from typing import List, Literal, Optional
from uuid import UUID

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import sqlalchemy as sa
from sqlalchemy import desc, func, select, text
from starlette.concurrency import run_in_threadpool

from db.models import Article, Job, StandaloneVideo, Submission
from pipeline import assets, members
from pipeline import submissions as service
from pipeline.access import check_organization_access
from pipeline.context import PipelineContext, build_context
from pipeline.errors import PipelineError, Result
from pipeline.log import configure_logging
from pipeline.reconciler import WebhookReconciler
from pipeline.state_machine import OutputKind
from providers.avatar import load_heygen_config, verify_signature

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.pipeline_context = build_context()
    logger.info("pipeline context ready")
    yield
    app.state.pipeline_context = None


app = FastAPI(title="Mediaflow API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in getenv("CORS_ORIGINS", "http://localhost:3000").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline_context(request: Request) -> PipelineContext:
    return request.app.state.pipeline_context


def _require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    expected = getenv("OPERATOR_TOKEN", "")
    if not expected:
        if getenv("ALLOW_OPS_WITHOUT_TOKEN", "0") == "1":
            return
        raise HTTPException(status_code=503, detail="operator_token_missing")
    if x_operator_token != expected:
        raise HTTPException(status_code=401, detail="operator_token_required")


def _current_user(authorization: str | None = Header(default=None)) -> str:
    secret = getenv("AUTH_JWT_SECRET", "")
    if not secret:
        raise HTTPException(status_code=503, detail="auth_not_configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="auth_required")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=getenv("AUTH_JWT_AUDIENCE", "authenticated"),
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="invalid_token")
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="invalid_token")
    return str(subject)


def _raise(error: PipelineError) -> None:
    raise HTTPException(status_code=error.http_status, detail=error.code)


def _unwrap(result: Result):
    if not result.ok:
        _raise(result.error)
    return result.value


def _row(obj) -> dict | None:
    if obj is None:
        return None
    mapper = sa.inspect(obj).mapper
    return jsonable_encoder({attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs})


def _organization(session, user_id: str, slug: str):
    return _unwrap(check_organization_access(session, user_id, slug))


def _kind(value: str) -> OutputKind:
    return _unwrap(service.parse_output_kind(value))


def _worker_state(ctx: PipelineContext) -> dict:
    try:
        from rq import Worker
        from pipeline.queue import get_queue, producer_redis

        redis = producer_redis(ctx.queue.config)
        redis.ping()
        queue = get_queue(redis, ctx.queue.config.queue_name)
        workers = Worker.all(connection=redis)
        return {
            "redis_ok": True,
            "online": len(workers) > 0,
            "worker_count": len(workers),
            "queue_depth": queue.count,
        }
    except Exception:
        return {
            "redis_ok": False,
            "online": False,
            "worker_count": 0,
            "queue_depth": None,
        }


def _service_status(name: str, ok: bool, details: str | None = None) -> dict:
    return {
        "service": name,
        "status": "ok" if ok else "down",
        "details": details,
    }


def _repo_counts(session, model, status_col=None) -> dict:
    total = session.execute(select(func.count()).select_from(model)).scalar_one()
    payload = {"total": int(total), "by_status": {}}
    if status_col is not None:
        rows = session.execute(select(status_col, func.count()).group_by(status_col)).all()
        payload["by_status"] = {str(status or "unknown"): int(count) for status, count in rows}
    return payload


class ArticleRequest(BaseModel):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    language: str = "ENGLISH"


class VideoOptions(BaseModel):
    character_id: Optional[str] = None
    character_type: Literal["avatar", "talking_photo"] = "avatar"
    voice_id: Optional[str] = None
    caption_style_id: Optional[UUID] = None
    enable_captions: bool = True
    enable_magic_zooms: bool = False
    enable_magic_brolls: bool = False
    magic_brolls_percentage: int = Field(default=40, ge=0, le=100)
    generate_bubbles: bool = False
    start_bumper_id: Optional[UUID] = None
    start_bumper_duration: Optional[float] = Field(default=None, gt=0)
    end_bumper_id: Optional[UUID] = None
    end_bumper_duration: Optional[float] = Field(default=None, gt=0)
    background_music_id: Optional[UUID] = None
    background_music_volume: Optional[float] = Field(default=None, ge=0, le=1)


class PodcastOptions(BaseModel):
    host_voice_id: Optional[str] = None
    guest_voice_id: Optional[str] = None


class VoiceOptions(BaseModel):
    voice_id: Optional[str] = None


class QuizOptions(BaseModel):
    question_count: int = Field(default=5, ge=1, le=20)


class SubmissionRequest(BaseModel):
    article_id: UUID
    language: Optional[str] = None
    script_approval: bool = True
    generate_audio: bool = False
    generate_video: bool = False
    generate_podcast: bool = False
    generate_quiz: bool = False
    generate_interactive_podcast: bool = False
    video: Optional[VideoOptions] = None
    podcast: Optional[PodcastOptions] = None
    audio: Optional[VoiceOptions] = None
    interactive_podcast: Optional[VoiceOptions] = None
    quiz: Optional[QuizOptions] = None


class ScriptUpdateRequest(BaseModel):
    script: str


class StandaloneVideoRequest(VideoOptions):
    title: str = Field(min_length=1)
    script: str = Field(min_length=1)
    language: str = "ENGLISH"


class PodcastScriptRequest(BaseModel):
    custom_prompt: Optional[str] = None


class BumperRequest(BaseModel):
    name: str = Field(min_length=1)
    media_type: Literal["image", "video"]
    position: Literal["start", "end", "both"] = "both"
    media_url: str
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = Field(default=None, gt=0)


class BackgroundMusicRequest(BaseModel):
    name: str = Field(min_length=1)
    audio_url: str
    volume: float = Field(default=0.15, ge=0, le=1)


class CaptionStyleRequest(BaseModel):
    name: str = Field(min_length=1)
    template_name: Optional[str] = None
    user_theme_id: Optional[str] = None


class MemberRoleRequest(BaseModel):
    role: str


def _options(model: BaseModel | None) -> dict | None:
    return model.model_dump() if model is not None else None


def _submission_body(session, submission: Submission) -> dict:
    body = _row(submission)
    body["outputs"] = {
        kind: _row(output) for kind, output in service.submission_outputs(session, submission).items()
    }
    return body


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/system/status")
def system_status(ctx: PipelineContext = Depends(get_pipeline_context)) -> dict:
    updated_at = datetime.now(timezone.utc)
    partial_failures: list[str] = []
    worker = _worker_state(ctx)
    services = [
        _service_status("api", True),
        _service_status("redis", bool(worker.get("redis_ok")), None if worker.get("redis_ok") else "ping_failed"),
        _service_status("worker", bool(worker.get("online")), f"count={worker.get('worker_count', 0)}"),
    ]

    repo_counts: dict[str, dict] = {
        "submissions": {"total": None, "by_status": {}},
        "standalone_videos": {"total": None, "by_status": {}},
        "jobs": {"total": None, "by_status": {}},
    }

    session = ctx.session_factory()
    try:
        session.execute(text("select 1"))
        services.append(_service_status("postgres", True))
        repo_counts["submissions"] = _repo_counts(session, Submission, Submission.status)
        repo_counts["standalone_videos"] = _repo_counts(session, StandaloneVideo, StandaloneVideo.status)
        repo_counts["jobs"] = _repo_counts(session, Job, Job.status)
    except Exception as exc:
        services.append(_service_status("postgres", False, "query_failed"))
        partial_failures.append(f"postgres_unavailable:{type(exc).__name__}")
    finally:
        session.close()

    return {
        "service_status": services,
        "repo_counts": repo_counts,
        "worker": worker,
        "updated_at": updated_at,
        "partial_failures": partial_failures,
    }


@app.get("/settings")
def get_settings() -> dict:
    def flag(name: str, default: str = "") -> str:
        return getenv(name, default)

    return {
        "redis_url": flag("REDIS_URL", ""),
        "rq_queue_name": flag("RQ_QUEUE_NAME", "media"),
        "rq_job_timeout": flag("RQ_JOB_TIMEOUT", "300"),
        "rq_media_timeout": flag("RQ_MEDIA_TIMEOUT", "1800"),
        "queue_max_attempts": flag("QUEUE_MAX_ATTEMPTS", "3"),
        "queue_backoff_base_s": flag("QUEUE_BACKOFF_BASE_S", "2"),
        "queue_backoff_cap_s": flag("QUEUE_BACKOFF_CAP_S", "60"),
        "output_timeout_min": flag("OUTPUT_TIMEOUT_MIN", "30"),
        "ffmpeg_timeout_s": flag("FFMPEG_TIMEOUT_S", "600"),
        "caption_editing_enabled": flag("CAPTION_EDITING_ENABLED", "1"),
        "storage_backend": flag("STORAGE_BACKEND", "s3"),
        "webhook_base_url": flag("WEBHOOK_BASE_URL", ""),
        "operator_guard": flag("OPERATOR_TOKEN", "") != "",
        "openai_model": flag("OPENAI_MODEL", ""),
        "elevenlabs_model": flag("ELEVENLABS_MODEL_ID", ""),
    }


@app.post("/org/{slug}/articles", status_code=201)
def create_article(
    slug: str,
    request: ArticleRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        article = _unwrap(
            service.create_article(
                ctx, session, org, user_id, title=request.title, content=request.content, language=request.language
            )
        )
        return _row(article)
    finally:
        session.close()


@app.get("/org/{slug}/articles/{article_id}")
def get_article(
    slug: str,
    article_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(service.get_article(session, org, article_id)))
    finally:
        session.close()


@app.get("/org/{slug}/articles")
def list_articles(
    slug: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        rows = session.execute(
            select(Article)
            .where(Article.organization_id == org.id)
            .order_by(desc(Article.created_at))
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return [_row(row) for row in rows]
    finally:
        session.close()


@app.post("/org/{slug}/submissions", status_code=201)
def create_submission(
    slug: str,
    request: SubmissionRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        submission = _unwrap(
            service.create_submission(
                ctx,
                session,
                org,
                user_id,
                article_id=request.article_id,
                language=request.language,
                script_approval=request.script_approval,
                outputs={
                    OutputKind.AUDIO: request.generate_audio,
                    OutputKind.VIDEO: request.generate_video,
                    OutputKind.PODCAST: request.generate_podcast,
                    OutputKind.QUIZ: request.generate_quiz,
                    OutputKind.INTERACTIVE_PODCAST: request.generate_interactive_podcast,
                },
                video=_options(request.video),
                podcast=_options(request.podcast),
                audio=_options(request.audio),
                interactive_podcast=_options(request.interactive_podcast),
                quiz=_options(request.quiz),
            )
        )
        return _submission_body(session, submission)
    finally:
        session.close()


@app.get("/org/{slug}/submissions/{submission_id}")
def get_submission(
    slug: str,
    submission_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        submission = _unwrap(service.get_submission(session, org, submission_id))
        return _submission_body(session, submission)
    finally:
        session.close()


@app.patch("/org/{slug}/submissions/{submission_id}/{kind}/{output_id}/script")
def update_script(
    slug: str,
    submission_id: UUID,
    kind: str,
    output_id: UUID,
    request: ScriptUpdateRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        output = _unwrap(
            service.update_script(ctx, session, org, submission_id, _kind(kind), output_id, request.script)
        )
        return _row(output)
    finally:
        session.close()


@app.post("/org/{slug}/submissions/{submission_id}/{kind}/{output_id}/generate-media", status_code=202)
def generate_media(
    slug: str,
    submission_id: UUID,
    kind: str,
    output_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        output = _unwrap(service.generate_media(ctx, session, org, submission_id, _kind(kind), output_id))
        return _row(output)
    finally:
        session.close()


@app.post("/org/{slug}/submissions/{submission_id}/{kind}/{output_id}/regenerate", status_code=202)
def regenerate_output(
    slug: str,
    submission_id: UUID,
    kind: str,
    output_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        output = _unwrap(service.regenerate_output(ctx, session, org, submission_id, _kind(kind), output_id))
        return _row(output)
    finally:
        session.close()


@app.post("/org/{slug}/submissions/{submission_id}/podcast/{output_id}/regenerate-script")
def regenerate_podcast_script(
    slug: str,
    submission_id: UUID,
    output_id: UUID,
    request: PodcastScriptRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        output = _unwrap(
            service.regenerate_podcast_script(ctx, session, org, submission_id, output_id, request.custom_prompt)
        )
        return _row(output)
    finally:
        session.close()


@app.post("/org/{slug}/videos", status_code=201)
def create_standalone_video(
    slug: str,
    request: StandaloneVideoRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        options = request.model_dump(exclude={"title", "script", "language"})
        video = _unwrap(
            service.create_standalone_video(
                ctx,
                session,
                org,
                user_id,
                title=request.title,
                script=request.script,
                language=request.language,
                video=options,
            )
        )
        return _row(video)
    finally:
        session.close()


@app.get("/org/{slug}/videos")
def list_standalone_videos(
    slug: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return [_row(row) for row in service.list_standalone_videos(session, org, limit=limit, offset=offset)]
    finally:
        session.close()


@app.get("/org/{slug}/videos/{video_id}")
def get_standalone_video(
    slug: str,
    video_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(service.get_standalone_video(session, org, video_id)))
    finally:
        session.close()


@app.post("/org/{slug}/videos/{video_id}/regenerate", status_code=202)
def regenerate_standalone_video(
    slug: str,
    video_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(service.regenerate_standalone(ctx, session, org, video_id)))
    finally:
        session.close()


@app.get("/org/{slug}/bumpers")
def list_bumpers(
    slug: str,
    position: Optional[Literal["start", "end", "both"]] = None,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return [_row(row) for row in _unwrap(assets.list_bumpers(session, org, position))]
    finally:
        session.close()


@app.post("/org/{slug}/bumpers", status_code=201)
def create_bumper(
    slug: str,
    request: BumperRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(assets.create_bumper(session, org, **request.model_dump())))
    finally:
        session.close()


@app.get("/org/{slug}/background-music")
def list_background_music(
    slug: str,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return [_row(row) for row in _unwrap(assets.list_background_music(session, org))]
    finally:
        session.close()


@app.post("/org/{slug}/background-music", status_code=201)
def create_background_music(
    slug: str,
    request: BackgroundMusicRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(assets.create_background_music(session, org, **request.model_dump())))
    finally:
        session.close()


@app.get("/org/{slug}/caption-styles")
def list_caption_styles(
    slug: str,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return [_row(row) for row in _unwrap(assets.list_caption_styles(session, org))]
    finally:
        session.close()


@app.post("/org/{slug}/caption-styles", status_code=201)
def create_caption_style(
    slug: str,
    request: CaptionStyleRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(assets.create_caption_style(session, org, **request.model_dump())))
    finally:
        session.close()


@app.get("/org/{slug}/members")
def list_members(
    slug: str,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return [_row(row) for row in _unwrap(members.list_members(session, org))]
    finally:
        session.close()


@app.patch("/org/{slug}/members/{member_id}")
def update_member_role(
    slug: str,
    member_id: UUID,
    request: MemberRoleRequest,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return _row(_unwrap(members.update_member_role(session, org, user_id, member_id, request.role)))
    finally:
        session.close()


@app.delete("/org/{slug}/members/{member_id}")
def remove_member(
    slug: str,
    member_id: UUID,
    user_id: str = Depends(_current_user),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> dict:
    session = ctx.session_factory()
    try:
        org = _organization(session, user_id, slug)
        return {"removed": _unwrap(members.remove_member(session, org, user_id, member_id))}
    finally:
        session.close()


@app.get("/jobs/dead")
def list_dead_jobs(
    job_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _guard: None = Depends(_require_operator),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> List[dict]:
    session = ctx.session_factory()
    try:
        stmt = select(Job).where(Job.status == "dead")
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        stmt = stmt.order_by(desc(Job.updated_at)).limit(limit).offset(offset)
        return [_row(row) for row in session.execute(stmt).scalars().all()]
    finally:
        session.close()


def _json_body(raw: bytes):
    try:
        return json.loads(raw or b"{}")
    except ValueError:
        return {}


def _webhook_response(ack) -> JSONResponse:
    return JSONResponse(status_code=ack.status_code, content=ack.body)


@app.post("/webhooks/submagic")
async def submagic_webhook(request: Request, ctx: PipelineContext = Depends(get_pipeline_context)) -> JSONResponse:
    payload = _json_body(await request.body())
    ack = await run_in_threadpool(WebhookReconciler(ctx).handle_caption_callback, payload)
    return _webhook_response(ack)


@app.post("/webhooks/heygen")
async def heygen_webhook(
    request: Request,
    signature: str | None = Header(default=None),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> JSONResponse:
    secret = load_heygen_config().webhook_secret
    if not secret:
        logger.error("heygen webhook received but HEYGEN_WEBHOOK_SECRET is not set")
        return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})
    raw = await request.body()
    if not verify_signature(raw, signature, secret):
        logger.warning("heygen webhook with an invalid signature")
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})
    ack = await run_in_threadpool(WebhookReconciler(ctx).handle_avatar_callback, _json_body(raw))
    return _webhook_response(ack)
