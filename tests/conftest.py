from __future__ import annotations

from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db.base import Base
from db.models import Article, Job, Membership, Organization, Submission
from pipeline.context import PipelineContext, PipelineSettings
from pipeline.errors import EnqueueError, ProviderError
from pipeline.postprocess import ProcessedVideo
from pipeline.queue import JobHandle
from providers.base import AsyncHandle, SyncResult
from providers.storage import StoredObject
from providers.transcription import Transcript
from providers.voice import SpeechAudio


class FakeQueue:
    """Records enqueues and writes the job row the way the real producer does."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self.jobs: list[tuple[str, dict, str]] = []
        self.fail = False

    def enqueue(self, job_type: str, payload: dict, job_id: str | None = None) -> JobHandle:
        if self.fail:
            raise EnqueueError(code="queue_unavailable", message="job broker is unreachable")
        job_id = job_id or str(uuid4())
        session = self._session_factory()
        try:
            session.add(
                Job(
                    id=UUID(job_id),
                    job_type=job_type,
                    status="queued",
                    attempt=1,
                    max_attempts=3,
                    payload=dict(payload),
                )
            )
            session.commit()
        finally:
            session.close()
        self.jobs.append((job_type, dict(payload), job_id))
        return JobHandle(id=job_id, job_type=job_type)

    def of_type(self, job_type: str) -> list[tuple[str, dict, str]]:
        return [job for job in self.jobs if job[0] == job_type]


class FakeScript:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.video_text = "Avatar narration for the story."
        self.podcast_text = "HOST: Welcome back.\nGUEST: Glad to be here."
        self.bubble_error: ProviderError | None = None

    def video_script(self, *, title, content, language):
        self.calls.append("video_script")
        return SyncResult(self.video_text)

    def podcast_transcript(self, *, title, content, language):
        self.calls.append("podcast_transcript")
        return SyncResult(self.podcast_text)

    def regenerate_podcast_transcript(self, *, original, guidance, title, content, language):
        self.calls.append("regenerate_podcast_transcript")
        self.guidance = guidance
        return SyncResult(f"{original}\nHOST: {guidance or 'Thanks for listening.'}")

    def audio_script(self, *, title, content, language):
        self.calls.append("audio_script")
        return SyncResult(f"Narration: {title}")

    def quiz(self, *, title, content, language, question_count):
        self.calls.append("quiz")
        return SyncResult(
            [
                {"question": f"Question {index}", "options": ["a", "b", "c", "d"], "answer": 0}
                for index in range(question_count)
            ]
        )

    def interactive_podcast(self, *, title, content, language):
        self.calls.append("interactive_podcast")
        return SyncResult([{"text": "Intro", "question": "Ready?", "options": ["yes", "no"]}])

    def bubbles(self, *, transcript, word_timings):
        self.calls.append("bubbles")
        if self.bubble_error is not None:
            raise self.bubble_error
        return SyncResult([{"text": "key phrase", "start": 0.0, "end": 1.0}])


class FakeVoice:
    default_voice_id = "voice-default"

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

    def synthesize(self, *, text, voice_id=None):
        self.calls.append((text, voice_id))
        return SyncResult(SpeechAudio(data=b"mp3:" + text.encode("utf-8"), content_type="audio/mpeg", estimated_duration=4))


class FakeAvatar:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def generate(self, **kwargs):
        self.calls.append(kwargs)
        return AsyncHandle(f"hg-{len(self.calls)}")


class FakeCaptions:
    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: ProviderError | None = None

    def submit(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return AsyncHandle(f"sm-{len(self.calls)}")


class FakeTranscriber:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.error: ProviderError | None = None

    def transcribe(self, *, media_uri, language=None, media_format="mp4"):
        self.calls.append(media_uri)
        if self.error is not None:
            raise self.error
        return SyncResult(
            Transcript(
                text="hello world",
                duration=37,
                word_timings=[
                    {"word": "hello", "start": 0.0, "end": 0.4},
                    {"word": "world", "start": 0.5, "end": 0.9},
                ],
            )
        )


class FakeThumbnail:
    def __init__(self) -> None:
        self.error: ProviderError | None = None

    def generate(self, *, title):
        if self.error is not None:
            raise self.error
        return SyncResult(b"png-bytes")


class FakeProviders:
    def __init__(self) -> None:
        self.script = FakeScript()
        self.voice = FakeVoice()
        self.avatar = FakeAvatar()
        self.captions = FakeCaptions()
        self.transcription = FakeTranscriber()
        self.thumbnail = FakeThumbnail()


class FakeStorage:
    def __init__(self) -> None:
        self.uploads: list[tuple[str, str]] = []

    def locate(self, key: str) -> StoredObject:
        return StoredObject(key=key, url=f"https://cdn.test/{key}", internal_url=f"s3://media-test/{key}")

    def upload_bytes(self, key, data, content_type):
        self.uploads.append(("bytes", key))
        return self.locate(key)

    def upload_file(self, key, path, content_type):
        self.uploads.append(("file", key))
        return self.locate(key)

    def upload_from_url(self, key, url, content_type):
        self.uploads.append(("url", key))
        return self.locate(key)


class FakePostProcessor:
    def __init__(self, storage: FakeStorage) -> None:
        self._storage = storage
        self.calls: list[dict] = []

    def run(self, *, plan, video_url, output_key):
        self.calls.append({"plan": plan, "video_url": video_url, "output_key": output_key})
        return ProcessedVideo(url=self._storage.locate(output_key).url, duration=42)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pipeline.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def ctx(session_factory) -> PipelineContext:
    storage = FakeStorage()
    return PipelineContext(
        session_factory=session_factory,
        queue=FakeQueue(session_factory),
        providers=FakeProviders(),
        storage=storage,
        post_processor=FakePostProcessor(storage),
        settings=PipelineSettings(
            webhook_base_url="https://api.test",
            output_timeout_min=30,
            transcript_fallback_duration_s=120,
            enable_caption_editing=True,
        ),
    )


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def org(session) -> Organization:
    org = Organization(slug="daily-news", name="Daily News")
    session.add(org)
    session.flush()
    session.add(Membership(organization_id=org.id, user_id="user-1", role="ADMIN"))
    session.commit()
    return org


@pytest.fixture
def article(session, org) -> Article:
    article = Article(
        organization_id=org.id,
        title="Monsoon arrives early",
        content="The monsoon reached the coast a week ahead of schedule.",
        language="ENGLISH",
    )
    session.add(article)
    session.commit()
    return article


def add_submission(session, org, article, children: dict, **flags) -> Submission:
    """Insert a submission and the given child rows (kind flag -> model instance)."""
    submission = Submission(
        organization_id=org.id,
        article_id=article.id,
        language="ENGLISH",
        status=flags.pop("status", "PENDING"),
        **flags,
    )
    session.add(submission)
    session.flush()
    for child in children.values():
        child.submission_id = submission.id
        session.add(child)
    session.commit()
    return submission


def reload(session, obj):
    """Re-read a row after another session changed it."""
    session.expire_all()
    return session.get(type(obj), obj.id)
