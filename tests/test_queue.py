from __future__ import annotations

from types import SimpleNamespace
from uuid import UUID

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from db.models import Job, Submission
from pipeline import jobs as jobs_module
from pipeline import submissions
from pipeline.errors import EnqueueError, ProviderError, ValidationError
from pipeline.jobs import execute_job, rq_on_failure, rq_on_success
from pipeline.queue import JobQueue, QueueConfig, backoff_intervals
from pipeline.state_machine import OutputKind


def _config(**overrides) -> QueueConfig:
    values = dict(
        redis_url="redis://localhost:6379/0",
        queue_name="media-test",
        max_attempts=3,
        backoff_base_s=2,
        backoff_cap_s=60,
        job_timeout_s=300,
        media_timeout_s=1800,
        producer_timeout_s=1.0,
        consumer_connect_timeout_s=5.0,
        failure_ttl_s=3600,
    )
    values.update(overrides)
    return QueueConfig(**values)


class _FakeRQQueue:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[tuple, dict]] = []

    def enqueue(self, func, *args, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(((func,) + args, kwargs))
        return SimpleNamespace(id=kwargs.get("job_id"))


def test_backoff_intervals_double_and_cap() -> None:
    assert backoff_intervals(2, 3, 60) == [2, 4]
    assert backoff_intervals(2, 8, 60) == [2, 4, 8, 16, 32, 60, 60]
    assert backoff_intervals(5, 1, 60) == []


def test_enqueue_persists_row_and_hands_job_to_rq(session_factory) -> None:
    fake = _FakeRQQueue()
    queue = JobQueue(session_factory, config=_config(), rq_queue=fake)

    handle = queue.enqueue("generate-audio", {"outputId": "abc"})

    (args, kwargs) = fake.calls[0]
    assert args[0] is jobs_module.run_job
    assert args[1:] == (handle.id, "generate-audio", {"outputId": "abc"})
    assert kwargs["job_id"] == handle.id
    assert kwargs["job_timeout"] == 300
    assert kwargs["retry"].max == 2
    assert kwargs["retry"].intervals == [2, 4]
    assert kwargs["on_failure"] is rq_on_failure
    assert kwargs["on_success"] is rq_on_success

    session = session_factory()
    try:
        row = session.get(Job, UUID(handle.id))
        assert (row.status, row.attempt, row.max_attempts) == ("queued", 1, 3)
        assert row.payload == {"outputId": "abc"}
    finally:
        session.close()


def test_enqueue_uses_given_job_id_and_media_timeout(session_factory) -> None:
    fake = _FakeRQQueue()
    queue = JobQueue(session_factory, config=_config(max_attempts=1), rq_queue=fake)
    job_id = "4f6c3c0e-2d7a-4a55-9b1d-3f7f0f5a6b10"

    handle = queue.enqueue("post-process-video-output", {"entityId": "x"}, job_id=job_id)

    assert handle.id == job_id
    _args, kwargs = fake.calls[0]
    assert kwargs["job_timeout"] == 1800
    assert kwargs["retry"] is None


def test_broker_outage_marks_row_failed(session_factory) -> None:
    queue = JobQueue(session_factory, config=_config(), rq_queue=_FakeRQQueue(RedisConnectionError("refused")))

    with pytest.raises(EnqueueError) as excinfo:
        queue.enqueue("generate-quiz", {"outputId": "abc"})

    assert excinfo.value.http_status == 503
    session = session_factory()
    try:
        (row,) = session.query(Job).all()
        assert row.status == "failed"
        assert row.error_payload["code"] == "enqueue_failed"
    finally:
        session.close()


def test_unknown_job_type_is_rejected_before_persisting(session_factory) -> None:
    queue = JobQueue(session_factory, config=_config(), rq_queue=_FakeRQQueue())

    with pytest.raises(ValidationError):
        queue.enqueue("render-gif", {})

    session = session_factory()
    try:
        assert session.query(Job).count() == 0
    finally:
        session.close()


@pytest.fixture
def audio_job(ctx, session, org, article, monkeypatch):
    monkeypatch.setattr(jobs_module, "build_context", lambda: ctx)
    created = submissions.create_submission(
        ctx, session, org, "user-1", article_id=article.id, outputs={OutputKind.AUDIO: True}
    )
    job_type, payload, job_id = ctx.queue.jobs[0]
    return created.value.id, SimpleNamespace(args=(job_id, job_type, payload))


def test_failure_callback_retries_then_dead_letters(ctx, session, audio_job) -> None:
    submission_id, rq_job = audio_job
    error = ProviderError(code="http_503", message="voice service unavailable", provider="elevenlabs", retryable=True)
    job_id = UUID(rq_job.args[0])

    rq_on_failure(rq_job, None, ProviderError, error, None)
    session.expire_all()
    row = session.get(Job, job_id)
    assert (row.status, row.attempt) == ("queued", 2)
    assert row.error_payload["code"] == "http_503"

    rq_on_failure(rq_job, None, ProviderError, error, None)
    rq_on_failure(rq_job, None, ProviderError, error, None)

    session.expire_all()
    row = session.get(Job, job_id)
    assert row.status == "dead"
    assert row.attempt == 3
    submission = session.get(Submission, submission_id)
    audio = submissions.submission_outputs(session, submission)["audio"]
    assert audio.status == "FAILED"
    assert audio.error == "voice service unavailable"
    assert submission.status == "FAILED"


def test_success_callback_does_not_revive_dead_rows(ctx, session, audio_job) -> None:
    _submission_id, rq_job = audio_job
    job_id = UUID(rq_job.args[0])

    rq_on_success(rq_job, None, {"status": "COMPLETED"})
    session.expire_all()
    assert session.get(Job, job_id).status == "succeeded"

    row = session.get(Job, job_id)
    row.status = "dead"
    session.commit()
    rq_on_success(rq_job, None, {})
    session.expire_all()
    assert session.get(Job, job_id).status == "dead"


def test_retryable_error_propagates_and_keeps_output_processing(ctx, session, audio_job) -> None:
    submission_id, rq_job = audio_job
    job_id, job_type, payload = rq_job.args

    def flaky(**_kwargs):
        raise ProviderError(code="timeout", message="openai timed out", provider="openai", retryable=True)

    ctx.providers.script.audio_script = flaky
    with pytest.raises(ProviderError):
        execute_job(ctx, job_id, job_type, payload)

    session.expire_all()
    submission = session.get(Submission, submission_id)
    assert submissions.submission_outputs(session, submission)["audio"].status == "PROCESSING"
    assert session.get(Job, UUID(job_id)).status == "running"


def test_permanent_provider_error_settles_the_job(ctx, session, audio_job) -> None:
    submission_id, rq_job = audio_job
    job_id, job_type, payload = rq_job.args

    def rejected(**_kwargs):
        raise ProviderError(code="http_401", message="invalid api key", provider="openai")

    ctx.providers.script.audio_script = rejected
    assert execute_job(ctx, job_id, job_type, payload) == {"dead": "http_401"}

    session.expire_all()
    submission = session.get(Submission, submission_id)
    audio = submissions.submission_outputs(session, submission)["audio"]
    assert audio.status == "FAILED"
    assert audio.error == "invalid api key"
    assert session.get(Job, UUID(job_id)).status == "dead"
