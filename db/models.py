from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


JsonType = JSON().with_variant(JSONB(), "postgresql")

OUTPUT_STATUS_CHECK = "status in ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')"
SCRIPTED_OUTPUT_STATUS_CHECK = (
    "status in ('PENDING', 'PROCESSING', 'SCRIPT_READY', 'COMPLETED', 'FAILED')"
)


class Organization(Base):
    __tablename__ = "organization"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    slug: Mapped[str] = mapped_column(Text, unique=True)
    name: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Membership(Base):
    __tablename__ = "membership"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(Text)
    role: Mapped[str] = mapped_column(Text, default="MEMBER")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_membership_org_user"),
        CheckConstraint("role in ('OWNER', 'ADMIN', 'MEMBER')", name="ck_membership_role"),
    )


class Article(Base):
    __tablename__ = "article"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE")
    )
    title: Mapped[str] = mapped_column(Text)
    content: Mapped[str] = mapped_column(Text)
    language: Mapped[str] = mapped_column(Text, default="ENGLISH")
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "language in ('ENGLISH', 'HINDI', 'MARATHI', 'BENGALI')",
            name="ck_article_language",
        ),
    )


class Submission(Base):
    __tablename__ = "submission"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE")
    )
    article_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("article.id", ondelete="CASCADE"))
    language: Mapped[str] = mapped_column(Text, default="ENGLISH")
    script_approval: Mapped[bool] = mapped_column(Boolean, default=True)
    generate_audio: Mapped[bool] = mapped_column(Boolean, default=False)
    generate_video: Mapped[bool] = mapped_column(Boolean, default=False)
    generate_podcast: Mapped[bool] = mapped_column(Boolean, default=False)
    generate_quiz: Mapped[bool] = mapped_column(Boolean, default=False)
    generate_interactive_podcast: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('PENDING', 'PROCESSING', 'PARTIAL_COMPLETE', 'COMPLETED', 'FAILED')",
            name="ck_submission_status",
        ),
    )


class VideoOutput(Base):
    __tablename__ = "video_output"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    submission_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("submission.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    script: Mapped[str | None] = mapped_column(Text, nullable=True)
    character_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    character_type: Mapped[str] = mapped_column(Text, default="avatar")
    voice_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    caption_style_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("caption_style.id", ondelete="SET NULL"), nullable=True
    )
    enable_captions: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_magic_zooms: Mapped[bool] = mapped_column(Boolean, default=False)
    enable_magic_brolls: Mapped[bool] = mapped_column(Boolean, default=False)
    magic_brolls_percentage: Mapped[int] = mapped_column(Integer, default=40)
    generate_bubbles: Mapped[bool] = mapped_column(Boolean, default=False)
    start_bumper_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("video_bumper.id", ondelete="SET NULL"), nullable=True
    )
    start_bumper_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_bumper_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("video_bumper.id", ondelete="SET NULL"), nullable=True
    )
    end_bumper_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    background_music_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("background_music.id", ondelete="SET NULL"), nullable=True
    )
    background_music_volume: Mapped[float | None] = mapped_column(Float, nullable=True)
    heygen_video_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    submagic_project_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    edited_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    word_timings: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    bubbles: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(SCRIPTED_OUTPUT_STATUS_CHECK, name="ck_video_output_status"),
        CheckConstraint(
            "magic_brolls_percentage between 0 and 100",
            name="ck_video_output_brolls_percentage",
        ),
    )


class PodcastOutput(Base):
    __tablename__ = "podcast_output"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    submission_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("submission.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    script: Mapped[str | None] = mapped_column(Text, nullable=True)
    host_voice_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    guest_voice_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(SCRIPTED_OUTPUT_STATUS_CHECK, name="ck_podcast_output_status"),
    )


class InteractivePodcastOutput(Base):
    __tablename__ = "interactive_podcast_output"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    submission_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("submission.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    voice_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    segments: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(OUTPUT_STATUS_CHECK, name="ck_interactive_podcast_output_status"),
    )


class AudioOutput(Base):
    __tablename__ = "audio_output"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    submission_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("submission.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    voice_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    script: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (CheckConstraint(OUTPUT_STATUS_CHECK, name="ck_audio_output_status"),)


class QuizOutput(Base):
    __tablename__ = "quiz_output"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    submission_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("submission.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    question_count: Mapped[int] = mapped_column(Integer, default=5)
    questions: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (CheckConstraint(OUTPUT_STATUS_CHECK, name="ck_quiz_output_status"),)


class StandaloneVideo(Base):
    __tablename__ = "standalone_video"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE")
    )
    title: Mapped[str] = mapped_column(Text)
    script: Mapped[str] = mapped_column(Text)
    language: Mapped[str] = mapped_column(Text, default="ENGLISH")
    status: Mapped[str] = mapped_column(Text, default="PENDING")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    character_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    character_type: Mapped[str] = mapped_column(Text, default="avatar")
    voice_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    caption_style_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("caption_style.id", ondelete="SET NULL"), nullable=True
    )
    enable_captions: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_magic_zooms: Mapped[bool] = mapped_column(Boolean, default=False)
    enable_magic_brolls: Mapped[bool] = mapped_column(Boolean, default=False)
    magic_brolls_percentage: Mapped[int] = mapped_column(Integer, default=40)
    start_bumper_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("video_bumper.id", ondelete="SET NULL"), nullable=True
    )
    start_bumper_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_bumper_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("video_bumper.id", ondelete="SET NULL"), nullable=True
    )
    end_bumper_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    background_music_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("background_music.id", ondelete="SET NULL"), nullable=True
    )
    background_music_volume: Mapped[float | None] = mapped_column(Float, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    heygen_video_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    submagic_project_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    edited_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    word_timings: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(OUTPUT_STATUS_CHECK, name="ck_standalone_video_status"),
        CheckConstraint(
            "magic_brolls_percentage between 0 and 100",
            name="ck_standalone_video_brolls_percentage",
        ),
    )


class VideoBumper(Base):
    __tablename__ = "video_bumper"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(Text)
    media_url: Mapped[str] = mapped_column(Text)
    media_type: Mapped[str] = mapped_column(Text)
    position: Mapped[str] = mapped_column(Text, default="both")
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        CheckConstraint("media_type in ('image', 'video')", name="ck_video_bumper_media_type"),
        CheckConstraint("position in ('start', 'end', 'both')", name="ck_video_bumper_position"),
    )


class BackgroundMusic(Base):
    __tablename__ = "background_music"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(Text)
    audio_url: Mapped[str] = mapped_column(Text)
    volume: Mapped[float] = mapped_column(Float, default=0.15)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        CheckConstraint("volume >= 0 and volume <= 1", name="ck_background_music_volume"),
    )


class CaptionStyle(Base):
    __tablename__ = "caption_style"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("organization.id", ondelete="CASCADE"), nullable=True
    )
    name: Mapped[str] = mapped_column(Text)
    template_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_theme_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Job(Base):
    __tablename__ = "job"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1)
    payload: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    result: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    error_payload: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('queued', 'running', 'succeeded', 'failed', 'dead')",
            name="ck_job_status",
        ),
    )
