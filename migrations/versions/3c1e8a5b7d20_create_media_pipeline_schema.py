"""create media pipeline schema

Revision ID: 3c1e8a5b7d20
Revises:
Create Date: 2026-10-18 10:00:00

Purpose:
- tenants (organization, membership) and source content (article)
- submission rollup plus one table per generated output kind
- standalone videos and the organization media assets they reference
- job table used as the queue's status record and dead letter

Operational notes:
- provider handle columns are indexed but not unique; the webhook reconciler
  reports duplicates instead of the database rejecting them
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3c1e8a5b7d20"
down_revision = None
branch_labels = None
depends_on = None

OUTPUT_STATUSES = "status in ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')"
SCRIPTED_STATUSES = "status in ('PENDING', 'PROCESSING', 'SCRIPT_READY', 'COMPLETED', 'FAILED')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def _generation_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "submission_id",
            sa.Uuid(),
            sa.ForeignKey("submission.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("generation_token", sa.Text(), nullable=True),
    ]


def _video_config_columns() -> list[sa.Column]:
    return [
        sa.Column("character_id", sa.Text(), nullable=True),
        sa.Column("character_type", sa.Text(), nullable=False, server_default="avatar"),
        sa.Column("voice_id", sa.Text(), nullable=True),
        sa.Column(
            "caption_style_id",
            sa.Uuid(),
            sa.ForeignKey("caption_style.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("enable_captions", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enable_magic_zooms", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enable_magic_brolls", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("magic_brolls_percentage", sa.Integer(), nullable=False, server_default="40"),
        sa.Column(
            "start_bumper_id",
            sa.Uuid(),
            sa.ForeignKey("video_bumper.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("start_bumper_duration", sa.Float(), nullable=True),
        sa.Column(
            "end_bumper_id",
            sa.Uuid(),
            sa.ForeignKey("video_bumper.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("end_bumper_duration", sa.Float(), nullable=True),
        sa.Column(
            "background_music_id",
            sa.Uuid(),
            sa.ForeignKey("background_music.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("background_music_volume", sa.Float(), nullable=True),
        sa.Column("heygen_video_id", sa.Text(), nullable=True),
        sa.Column("submagic_project_id", sa.Text(), nullable=True),
        sa.Column("edited_video_url", sa.Text(), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("transcript", sa.Text(), nullable=True),
        sa.Column("word_timings", postgresql.JSONB(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
    ]


def _org_fk() -> sa.Column:
    return sa.Column(
        "organization_id",
        sa.Uuid(),
        sa.ForeignKey("organization.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "organization",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_table(
        "membership",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _org_fk(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False, server_default="MEMBER"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_membership_org_user"),
        sa.CheckConstraint("role in ('OWNER', 'ADMIN', 'MEMBER')", name="ck_membership_role"),
    )
    op.create_index("ix_membership_user_id", "membership", ["user_id"])

    op.create_table(
        "article",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _org_fk(),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), nullable=False, server_default="ENGLISH"),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "language in ('ENGLISH', 'HINDI', 'MARATHI', 'BENGALI')",
            name="ck_article_language",
        ),
    )
    op.create_index("ix_article_organization_id", "article", ["organization_id"])

    op.create_table(
        "video_bumper",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _org_fk(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("media_url", sa.Text(), nullable=False),
        sa.Column("media_type", sa.Text(), nullable=False),
        sa.Column("position", sa.Text(), nullable=False, server_default="both"),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("media_type in ('image', 'video')", name="ck_video_bumper_media_type"),
        sa.CheckConstraint("position in ('start', 'end', 'both')", name="ck_video_bumper_position"),
    )
    op.create_table(
        "background_music",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _org_fk(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("audio_url", sa.Text(), nullable=False),
        sa.Column("volume", sa.Float(), nullable=False, server_default="0.15"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("volume >= 0 and volume <= 1", name="ck_background_music_volume"),
    )
    op.create_table(
        "caption_style",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.Uuid(),
            sa.ForeignKey("organization.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("template_name", sa.Text(), nullable=True),
        sa.Column("user_theme_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "submission",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _org_fk(),
        sa.Column("article_id", sa.Uuid(), sa.ForeignKey("article.id", ondelete="CASCADE"), nullable=False),
        sa.Column("language", sa.Text(), nullable=False, server_default="ENGLISH"),
        sa.Column("script_approval", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("generate_audio", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("generate_video", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("generate_podcast", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("generate_quiz", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("generate_interactive_podcast", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("created_by", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status in ('PENDING', 'PROCESSING', 'PARTIAL_COMPLETE', 'COMPLETED', 'FAILED')",
            name="ck_submission_status",
        ),
    )
    op.create_index("ix_submission_organization_id", "submission", ["organization_id"])

    op.create_table(
        "video_output",
        *_generation_columns(),
        sa.Column("script", sa.Text(), nullable=True),
        sa.Column("generate_bubbles", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("bubbles", postgresql.JSONB(), nullable=True),
        *_video_config_columns(),
        *_timestamps(),
        sa.CheckConstraint(SCRIPTED_STATUSES, name="ck_video_output_status"),
        sa.CheckConstraint(
            "magic_brolls_percentage between 0 and 100",
            name="ck_video_output_brolls_percentage",
        ),
    )
    op.create_table(
        "podcast_output",
        *_generation_columns(),
        sa.Column("script", sa.Text(), nullable=True),
        sa.Column("host_voice_id", sa.Text(), nullable=True),
        sa.Column("guest_voice_id", sa.Text(), nullable=True),
        sa.Column("audio_url", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(SCRIPTED_STATUSES, name="ck_podcast_output_status"),
    )
    op.create_table(
        "interactive_podcast_output",
        *_generation_columns(),
        sa.Column("voice_id", sa.Text(), nullable=True),
        sa.Column("segments", postgresql.JSONB(), nullable=True),
        sa.Column("audio_url", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(OUTPUT_STATUSES, name="ck_interactive_podcast_output_status"),
    )
    op.create_table(
        "audio_output",
        *_generation_columns(),
        sa.Column("voice_id", sa.Text(), nullable=True),
        sa.Column("script", sa.Text(), nullable=True),
        sa.Column("audio_url", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(OUTPUT_STATUSES, name="ck_audio_output_status"),
    )
    op.create_table(
        "quiz_output",
        *_generation_columns(),
        sa.Column("question_count", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("questions", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(OUTPUT_STATUSES, name="ck_quiz_output_status"),
    )

    op.create_table(
        "standalone_video",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _org_fk(),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("script", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), nullable=False, server_default="ENGLISH"),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("generation_token", sa.Text(), nullable=True),
        sa.Column("audio_url", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        *_video_config_columns(),
        *_timestamps(),
        sa.CheckConstraint(OUTPUT_STATUSES, name="ck_standalone_video_status"),
        sa.CheckConstraint(
            "magic_brolls_percentage between 0 and 100",
            name="ck_standalone_video_brolls_percentage",
        ),
    )

    for table in ("video_output", "standalone_video"):
        op.create_index(f"ix_{table}_heygen_video_id", table, ["heygen_video_id"])
        op.create_index(f"ix_{table}_submagic_project_id", table, ["submagic_project_id"])
        op.create_index(f"ix_{table}_status_updated_at", table, ["status", "updated_at"])

    op.create_table(
        "job",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("error_payload", postgresql.JSONB(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status in ('queued', 'running', 'succeeded', 'failed', 'dead')",
            name="ck_job_status",
        ),
    )
    op.create_index("ix_job_status_updated_at", "job", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_index("ix_job_status_updated_at", table_name="job")
    op.drop_table("job")
    for table in ("standalone_video", "video_output"):
        op.drop_index(f"ix_{table}_status_updated_at", table_name=table)
        op.drop_index(f"ix_{table}_submagic_project_id", table_name=table)
        op.drop_index(f"ix_{table}_heygen_video_id", table_name=table)
    op.drop_table("standalone_video")
    for table in ("quiz_output", "audio_output", "interactive_podcast_output", "podcast_output", "video_output"):
        op.drop_table(table)
    op.drop_index("ix_submission_organization_id", table_name="submission")
    op.drop_table("submission")
    op.drop_table("caption_style")
    op.drop_table("background_music")
    op.drop_table("video_bumper")
    op.drop_index("ix_article_organization_id", table_name="article")
    op.drop_table("article")
    op.drop_index("ix_membership_user_id", table_name="membership")
    op.drop_table("membership")
    op.drop_table("organization")
