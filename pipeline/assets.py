"""Organization-owned media assets: bumpers, background music and caption styles."""

from __future__ import annotations

import logging
from urllib.parse import urlparse

from sqlalchemy import or_, select

from db.models import BackgroundMusic, CaptionStyle, VideoBumper
from pipeline.errors import Result, ValidationError

logger = logging.getLogger(__name__)

BUMPER_POSITIONS = ("start", "end", "both")
BUMPER_MEDIA_TYPES = ("image", "video")


def _is_url(value: str | None) -> bool:
    parsed = urlparse(value or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _invalid(message: str) -> Result:
    return Result.failure(ValidationError(code="invalid_asset", message=message))


def list_bumpers(session, org, position: str | None = None) -> Result:
    stmt = select(VideoBumper).where(VideoBumper.organization_id == org.id)
    if position is not None:
        if position not in BUMPER_POSITIONS:
            return _invalid(f"unknown bumper position: {position}")
        stmt = stmt.where(VideoBumper.position == position)
    return Result.success(list(session.execute(stmt.order_by(VideoBumper.name)).scalars()))


def create_bumper(
    session,
    org,
    *,
    name: str,
    media_url: str,
    media_type: str,
    position: str = "both",
    thumbnail_url: str | None = None,
    duration: float | None = None,
) -> Result:
    if not (name or "").strip():
        return _invalid("name is required")
    if media_type not in BUMPER_MEDIA_TYPES:
        return _invalid(f"unknown bumper media type: {media_type}")
    if position not in BUMPER_POSITIONS:
        return _invalid(f"unknown bumper position: {position}")
    if not _is_url(media_url):
        return _invalid("media_url must be an http(s) URL")
    if thumbnail_url is not None and not _is_url(thumbnail_url):
        return _invalid("thumbnail_url must be an http(s) URL")
    if duration is not None and duration <= 0:
        return _invalid("duration must be positive")

    bumper = VideoBumper(
        organization_id=org.id,
        name=name.strip(),
        media_url=media_url,
        media_type=media_type,
        position=position,
        thumbnail_url=thumbnail_url,
        duration=duration,
    )
    session.add(bumper)
    session.commit()
    session.refresh(bumper)
    logger.info("org %s: added %s bumper %s", org.slug, position, bumper.id)
    return Result.success(bumper)


def list_background_music(session, org) -> Result:
    rows = session.execute(
        select(BackgroundMusic).where(BackgroundMusic.organization_id == org.id).order_by(BackgroundMusic.name)
    ).scalars()
    return Result.success(list(rows))


def create_background_music(session, org, *, name: str, audio_url: str, volume: float = 0.15) -> Result:
    if not (name or "").strip():
        return _invalid("name is required")
    if not _is_url(audio_url):
        return _invalid("audio_url must be an http(s) URL")
    if not 0 <= volume <= 1:
        return _invalid("volume must be between 0 and 1")

    music = BackgroundMusic(organization_id=org.id, name=name.strip(), audio_url=audio_url, volume=volume)
    session.add(music)
    session.commit()
    session.refresh(music)
    logger.info("org %s: added background music %s", org.slug, music.id)
    return Result.success(music)


def list_caption_styles(session, org) -> Result:
    """Styles the organization owns plus the shared ones (no organization)."""
    rows = session.execute(
        select(CaptionStyle)
        .where(or_(CaptionStyle.organization_id == org.id, CaptionStyle.organization_id.is_(None)))
        .order_by(CaptionStyle.name)
    ).scalars()
    return Result.success(list(rows))


def create_caption_style(
    session, org, *, name: str, template_name: str | None = None, user_theme_id: str | None = None
) -> Result:
    if not (name or "").strip():
        return _invalid("name is required")
    if not (template_name or user_theme_id):
        return _invalid("a caption style needs a template_name or a user_theme_id")

    style = CaptionStyle(
        organization_id=org.id,
        name=name.strip(),
        template_name=template_name,
        user_theme_id=user_theme_id,
    )
    session.add(style)
    session.commit()
    session.refresh(style)
    return Result.success(style)
