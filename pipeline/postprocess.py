"""Bumper and background-music compositing with ffmpeg.

The main clip sets the target geometry. Every piece is conformed to the same
size, frame rate and audio layout so the concat filter can join them, then the
music bed is mixed under the joined result.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import math
import os
from pathlib import Path
import shutil
import subprocess
import tempfile

from db.models import BackgroundMusic, VideoBumper
from pipeline.errors import NotFoundError, PostProcessingError
from providers.base import download_bytes

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 720
DEFAULT_HEIGHT = 1280
DEFAULT_FRAME_RATE = 25.0
AUDIO_RATE = "44100"


@dataclass(frozen=True)
class PostProcessConfig:
    ffmpeg_bin: str
    ffprobe_bin: str
    timeout_s: int
    default_image_bumper_s: float
    download_timeout_s: int


def load_postprocess_config() -> PostProcessConfig:
    return PostProcessConfig(
        ffmpeg_bin=os.getenv("FFMPEG_BIN") or shutil.which("ffmpeg") or "ffmpeg",
        ffprobe_bin=os.getenv("FFPROBE_BIN") or shutil.which("ffprobe") or "ffprobe",
        timeout_s=int(os.getenv("FFMPEG_TIMEOUT_S", "600")),
        default_image_bumper_s=float(os.getenv("BUMPER_IMAGE_DEFAULT_S", "3")),
        download_timeout_s=int(os.getenv("MEDIA_DOWNLOAD_TIMEOUT_S", "300")),
    )


@dataclass(frozen=True)
class Bumper:
    media_url: str
    media_type: str
    duration: float | None = None


@dataclass(frozen=True)
class PostProcessPlan:
    start: Bumper | None = None
    end: Bumper | None = None
    music_url: str | None = None
    music_volume: float = 0.15

    @property
    def is_empty(self) -> bool:
        return self.start is None and self.end is None and self.music_url is None


@dataclass(frozen=True)
class MediaInfo:
    width: int
    height: int
    duration: float
    frame_rate: float
    has_audio: bool


@dataclass(frozen=True)
class ProcessedVideo:
    url: str
    duration: int | None


def has_post_processing(entity) -> bool:
    return any(
        getattr(entity, name, None) is not None
        for name in ("start_bumper_id", "end_bumper_id", "background_music_id")
    )


def _bumper(session, bumper_id, duration_override: float | None) -> Bumper | None:
    if bumper_id is None:
        return None
    row = session.get(VideoBumper, bumper_id)
    if row is None:
        raise NotFoundError(code="bumper_not_found", message=f"bumper {bumper_id} no longer exists")
    return Bumper(
        media_url=row.media_url,
        media_type=row.media_type,
        duration=duration_override if duration_override is not None else row.duration,
    )


def build_plan(session, entity) -> PostProcessPlan:
    """Read the compositing plan from the entity's persisted configuration."""
    music_url = None
    volume = 0.15
    if entity.background_music_id is not None:
        music = session.get(BackgroundMusic, entity.background_music_id)
        if music is None:
            raise NotFoundError(
                code="music_not_found",
                message=f"background music {entity.background_music_id} no longer exists",
            )
        music_url = music.audio_url
        volume = entity.background_music_volume if entity.background_music_volume is not None else music.volume
    return PostProcessPlan(
        start=_bumper(session, entity.start_bumper_id, entity.start_bumper_duration),
        end=_bumper(session, entity.end_bumper_id, entity.end_bumper_duration),
        music_url=music_url,
        music_volume=max(0.0, min(1.0, float(volume))),
    )


def _parse_frame_rate(value: str | None) -> float:
    if not value or value == "0/0":
        return DEFAULT_FRAME_RATE
    if "/" in value:
        num, den = value.split("/", 1)
        try:
            return float(num) / float(den) if float(den) else DEFAULT_FRAME_RATE
        except ValueError:
            return DEFAULT_FRAME_RATE
    try:
        return float(value)
    except ValueError:
        return DEFAULT_FRAME_RATE


def parse_probe(document: dict) -> MediaInfo:
    streams = document.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), {})
    has_audio = any(s.get("codec_type") == "audio" for s in streams)
    duration = (document.get("format") or {}).get("duration") or video.get("duration") or 0
    return MediaInfo(
        width=int(video.get("width") or DEFAULT_WIDTH),
        height=int(video.get("height") or DEFAULT_HEIGHT),
        duration=float(duration),
        frame_rate=_parse_frame_rate(video.get("r_frame_rate")),
        has_audio=has_audio,
    )


def _video_filter(info: MediaInfo) -> str:
    return (
        f"scale={info.width}:{info.height}:force_original_aspect_ratio=decrease,"
        f"pad={info.width}:{info.height}:(ow-iw)/2:(oh-ih)/2,"
        f"setsar=1,fps={info.frame_rate:g},format=yuv420p"
    )


class PostProcessor:
    def __init__(self, storage, config: PostProcessConfig | None = None) -> None:
        self._storage = storage
        self._config = config or load_postprocess_config()

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        logger.debug("ffmpeg: %s", " ".join(cmd))
        try:
            return subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self._config.timeout_s,
            )
        except subprocess.CalledProcessError as exc:
            tail = (exc.stderr or "").strip().splitlines()[-3:]
            raise PostProcessingError(
                code="ffmpeg_failed",
                message=f"{Path(cmd[0]).name} exited {exc.returncode}: {' '.join(tail)[:300]}",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise PostProcessingError(
                code="ffmpeg_timeout",
                message=f"{Path(cmd[0]).name} exceeded {self._config.timeout_s}s",
            ) from exc
        except OSError as exc:
            raise PostProcessingError(code="ffmpeg_unavailable", message=str(exc)[:300]) from exc

    def _download(self, url: str, target: Path) -> Path:
        target.write_bytes(download_bytes(url, timeout_s=self._config.download_timeout_s))
        return target

    def probe(self, path: Path) -> MediaInfo:
        result = self._run(
            [
                self._config.ffprobe_bin,
                "-v",
                "error",
                "-show_entries",
                "stream=codec_type,width,height,r_frame_rate,duration:format=duration",
                "-of",
                "json",
                str(path),
            ]
        )
        try:
            return parse_probe(json.loads(result.stdout or "{}"))
        except (ValueError, TypeError) as exc:
            raise PostProcessingError(code="probe_failed", message=f"could not read {path.name}") from exc

    def image_to_video(self, image: Path, output: Path, duration: float, target: MediaInfo) -> Path:
        self._run(
            [
                self._config.ffmpeg_bin,
                "-y",
                "-loop",
                "1",
                "-i",
                str(image),
                "-f",
                "lavfi",
                "-i",
                f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_RATE}",
                "-t",
                f"{duration:g}",
                "-vf",
                _video_filter(target),
                "-c:v",
                "libx264",
                "-pix_fmt",
                "yuv420p",
                "-c:a",
                "aac",
                "-ar",
                AUDIO_RATE,
                "-ac",
                "2",
                "-shortest",
                str(output),
            ]
        )
        return output

    def conform_video(self, source: Path, output: Path, target: MediaInfo) -> Path:
        info = self.probe(source)
        cmd = [self._config.ffmpeg_bin, "-y", "-i", str(source)]
        if info.has_audio:
            audio_map = "0:a:0"
        else:
            cmd += ["-f", "lavfi", "-t", f"{max(info.duration, 0.1):g}", "-i",
                    f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_RATE}"]
            audio_map = "1:a:0"
        cmd += [
            "-map",
            "0:v:0",
            "-map",
            audio_map,
            "-vf",
            _video_filter(target),
            "-c:v",
            "libx264",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "aac",
            "-ar",
            AUDIO_RATE,
            "-ac",
            "2",
            "-shortest",
            str(output),
        ]
        self._run(cmd)
        return output

    def concatenate(self, inputs: list[Path], output: Path) -> Path:
        cmd = [self._config.ffmpeg_bin, "-y"]
        for path in inputs:
            cmd += ["-i", str(path)]
        streams = "".join(f"[{index}:v][{index}:a]" for index in range(len(inputs)))
        cmd += [
            "-filter_complex",
            f"{streams}concat=n={len(inputs)}:v=1:a=1[v][a]",
            "-map",
            "[v]",
            "-map",
            "[a]",
            "-c:v",
            "libx264",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "aac",
            str(output),
        ]
        self._run(cmd)
        return output

    def mix_music(self, video: Path, music: Path, volume: float, output: Path) -> Path:
        self._run(
            [
                self._config.ffmpeg_bin,
                "-y",
                "-i",
                str(video),
                "-stream_loop",
                "-1",
                "-i",
                str(music),
                "-filter_complex",
                f"[1:a]volume={volume:g}[music];"
                "[0:a][music]amix=inputs=2:duration=first:dropout_transition=2[aout]",
                "-map",
                "0:v:0",
                "-map",
                "[aout]",
                "-c:v",
                "copy",
                "-c:a",
                "aac",
                "-shortest",
                str(output),
            ]
        )
        return output

    def _prepare_bumper(self, bumper: Bumper, workdir: Path, name: str, target: MediaInfo) -> Path:
        source = self._download(bumper.media_url, workdir / f"{name}-source")
        output = workdir / f"{name}.mp4"
        if bumper.media_type == "image":
            duration = bumper.duration or self._config.default_image_bumper_s
            return self.image_to_video(source, output, duration, target)
        return self.conform_video(source, output, target)

    def run(self, *, plan: PostProcessPlan, video_url: str, output_key: str) -> ProcessedVideo:
        if plan.is_empty:
            stored = self._storage.upload_from_url(output_key, video_url, "video/mp4")
            return ProcessedVideo(url=stored.url, duration=None)

        with tempfile.TemporaryDirectory(prefix="postprocess-") as tmp:
            workdir = Path(tmp)
            main_source = self._download(video_url, workdir / "main-source.mp4")
            target = self.probe(main_source)
            logger.info(
                "post-processing %sx%s@%gfps %.1fs start=%s end=%s music=%s",
                target.width,
                target.height,
                target.frame_rate,
                target.duration,
                plan.start is not None,
                plan.end is not None,
                plan.music_url is not None,
            )

            current = main_source
            if plan.start is not None or plan.end is not None:
                pieces: list[Path] = []
                if plan.start is not None:
                    pieces.append(self._prepare_bumper(plan.start, workdir, "start", target))
                pieces.append(self.conform_video(main_source, workdir / "main.mp4", target))
                if plan.end is not None:
                    pieces.append(self._prepare_bumper(plan.end, workdir, "end", target))
                current = self.concatenate(pieces, workdir / "joined.mp4")
            elif not target.has_audio:
                # amix needs an audio stream on the main clip
                current = self.conform_video(main_source, workdir / "main.mp4", target)

            if plan.music_url is not None:
                music = self._download(plan.music_url, workdir / "music-source")
                current = self.mix_music(current, music, plan.music_volume, workdir / "final.mp4")

            final = self.probe(current)
            stored = self._storage.upload_file(output_key, current, "video/mp4")
            return ProcessedVideo(url=stored.url, duration=math.ceil(final.duration))
