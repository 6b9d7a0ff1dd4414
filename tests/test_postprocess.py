from __future__ import annotations

import json
import subprocess
from types import SimpleNamespace
from uuid import uuid4

import pytest

from db.models import BackgroundMusic, VideoBumper
from pipeline import postprocess
from pipeline.errors import NotFoundError, PostProcessingError
from pipeline.postprocess import (
    Bumper,
    PostProcessConfig,
    PostProcessor,
    PostProcessPlan,
    build_plan,
    has_post_processing,
    parse_probe,
)

from conftest import FakeStorage

PROBE_WITH_AUDIO = {
    "streams": [
        {"codec_type": "video", "width": 1080, "height": 1920, "r_frame_rate": "30/1"},
        {"codec_type": "audio"},
    ],
    "format": {"duration": "12.2"},
}


class _FakeFfmpeg:
    def __init__(self, probe: dict = PROBE_WITH_AUDIO, fail_on: str | None = None) -> None:
        self.probe = probe
        self.fail_on = fail_on
        self.commands: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(list(cmd))
        if self.fail_on and any(self.fail_on in part for part in cmd):
            raise subprocess.CalledProcessError(1, cmd, output="", stderr="frame=1\nfps=0\nUnknown encoder 'libx264'")
        if cmd[0] == "ffprobe":
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(self.probe), stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def ffmpeg_commands(self) -> list[list[str]]:
        return [cmd for cmd in self.commands if cmd[0] == "ffmpeg"]


def _processor(monkeypatch, fake: _FakeFfmpeg) -> tuple[PostProcessor, FakeStorage, list[str]]:
    downloads: list[str] = []

    def download(url, **_kwargs):
        downloads.append(url)
        return b"media"

    monkeypatch.setattr(postprocess.subprocess, "run", fake)
    monkeypatch.setattr(postprocess, "download_bytes", download)
    storage = FakeStorage()
    config = PostProcessConfig(
        ffmpeg_bin="ffmpeg",
        ffprobe_bin="ffprobe",
        timeout_s=60,
        default_image_bumper_s=3.0,
        download_timeout_s=30,
    )
    return PostProcessor(storage, config), storage, downloads


def test_empty_plan_copies_the_edited_video(monkeypatch) -> None:
    fake = _FakeFfmpeg()
    processor, storage, _downloads = _processor(monkeypatch, fake)

    result = processor.run(plan=PostProcessPlan(), video_url="https://sm.test/e.mp4", output_key="k/final-video.mp4")

    assert result.url == "https://cdn.test/k/final-video.mp4"
    assert result.duration is None
    assert storage.uploads == [("url", "k/final-video.mp4")]
    assert fake.commands == []


def test_music_only_mixes_under_the_main_audio(monkeypatch) -> None:
    fake = _FakeFfmpeg()
    processor, storage, downloads = _processor(monkeypatch, fake)

    result = processor.run(
        plan=PostProcessPlan(music_url="https://assets.test/bed.mp3", music_volume=0.2),
        video_url="https://sm.test/e.mp4",
        output_key="k/final-video.mp4",
    )

    assert downloads == ["https://sm.test/e.mp4", "https://assets.test/bed.mp3"]
    (mix,) = fake.ffmpeg_commands()
    filters = mix[mix.index("-filter_complex") + 1]
    assert "volume=0.2" in filters
    assert "amix=inputs=2:duration=first" in filters
    assert "-stream_loop" in mix
    assert result.duration == 13
    assert storage.uploads == [("file", "k/final-video.mp4")]


def test_silent_main_clip_gets_an_audio_track_before_mixing(monkeypatch) -> None:
    silent = {"streams": [{"codec_type": "video", "width": 720, "height": 1280}], "format": {"duration": "8"}}
    fake = _FakeFfmpeg(probe=silent)
    processor, _storage, _downloads = _processor(monkeypatch, fake)

    processor.run(
        plan=PostProcessPlan(music_url="https://assets.test/bed.mp3"),
        video_url="https://sm.test/e.mp4",
        output_key="k/final-video.mp4",
    )

    conform, mix = fake.ffmpeg_commands()
    assert any(part.startswith("anullsrc") for part in conform)
    assert "amix" in mix[mix.index("-filter_complex") + 1]


def test_bumpers_are_conformed_and_concatenated(monkeypatch) -> None:
    fake = _FakeFfmpeg()
    processor, _storage, downloads = _processor(monkeypatch, fake)

    processor.run(
        plan=PostProcessPlan(
            start=Bumper(media_url="https://assets.test/intro.png", media_type="image", duration=2.5),
            end=Bumper(media_url="https://assets.test/outro.mp4", media_type="video"),
        ),
        video_url="https://sm.test/e.mp4",
        output_key="k/final-video.mp4",
    )

    assert downloads == ["https://sm.test/e.mp4", "https://assets.test/intro.png", "https://assets.test/outro.mp4"]
    image, main, outro, joined = fake.ffmpeg_commands()
    assert image[image.index("-loop") + 1] == "1"
    assert image[image.index("-t") + 1] == "2.5"
    assert "scale=1080:1920:force_original_aspect_ratio=decrease" in image[image.index("-vf") + 1]
    assert "fps=30" in main[main.index("-vf") + 1]
    assert outro[outro.index("-i") + 1].endswith("end-source")
    assert "concat=n=3:v=1:a=1" in joined[joined.index("-filter_complex") + 1]
    assert joined[-1].endswith("joined.mp4")


def test_image_bumper_without_duration_uses_default(monkeypatch) -> None:
    fake = _FakeFfmpeg()
    processor, _storage, _downloads = _processor(monkeypatch, fake)

    processor.run(
        plan=PostProcessPlan(end=Bumper(media_url="https://assets.test/outro.png", media_type="image")),
        video_url="https://sm.test/e.mp4",
        output_key="k/final-video.mp4",
    )

    _main, image, joined = fake.ffmpeg_commands()
    assert image[image.index("-t") + 1] == "3"
    assert "concat=n=2" in joined[joined.index("-filter_complex") + 1]


def test_ffmpeg_failure_raises_post_processing_error(monkeypatch) -> None:
    fake = _FakeFfmpeg(fail_on="amix")
    processor, storage, _downloads = _processor(monkeypatch, fake)

    with pytest.raises(PostProcessingError) as excinfo:
        processor.run(
            plan=PostProcessPlan(music_url="https://assets.test/bed.mp3"),
            video_url="https://sm.test/e.mp4",
            output_key="k/final-video.mp4",
        )

    assert excinfo.value.code == "ffmpeg_failed"
    assert "Unknown encoder" in excinfo.value.message
    assert excinfo.value.retryable is False
    assert storage.uploads == []


def test_parse_probe_defaults() -> None:
    info = parse_probe({})
    assert (info.width, info.height, info.frame_rate, info.duration, info.has_audio) == (720, 1280, 25.0, 0.0, False)

    ntsc = parse_probe({"streams": [{"codec_type": "video", "r_frame_rate": "30000/1001", "duration": "4.5"}]})
    assert round(ntsc.frame_rate, 2) == 29.97
    assert ntsc.duration == 4.5


def test_build_plan_reads_persisted_assets(session, org) -> None:
    bumper = VideoBumper(organization_id=org.id, name="Intro", media_url="https://assets.test/i.mp4", media_type="video", duration=4.0)
    music = BackgroundMusic(organization_id=org.id, name="Bed", audio_url="https://assets.test/bed.mp3", volume=0.3)
    session.add_all([bumper, music])
    session.commit()

    entity = SimpleNamespace(
        start_bumper_id=bumper.id,
        start_bumper_duration=2.0,
        end_bumper_id=None,
        end_bumper_duration=None,
        background_music_id=music.id,
        background_music_volume=None,
    )
    plan = build_plan(session, entity)

    assert plan.start == Bumper(media_url="https://assets.test/i.mp4", media_type="video", duration=2.0)
    assert plan.end is None
    assert plan.music_url == "https://assets.test/bed.mp3"
    assert plan.music_volume == 0.3
    assert has_post_processing(entity)


def test_build_plan_with_deleted_bumper_fails(session) -> None:
    entity = SimpleNamespace(
        start_bumper_id=None,
        start_bumper_duration=None,
        end_bumper_id=uuid4(),
        end_bumper_duration=None,
        background_music_id=None,
        background_music_volume=None,
    )

    with pytest.raises(NotFoundError) as excinfo:
        build_plan(session, entity)
    assert excinfo.value.code == "bumper_not_found"
    assert not has_post_processing(SimpleNamespace(start_bumper_id=None, end_bumper_id=None, background_music_id=None))
