from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
import os
from typing import Any
from uuid import UUID, uuid4

from redis import Redis
from redis.backoff import ExponentialBackoff, NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry as RedisRetry
from rq import Queue, Retry, SimpleWorker, Worker

from db.models import Job
from pipeline.errors import EnqueueError, ValidationError

logger = logging.getLogger(__name__)

JOB_TYPES = (
    "generate-audio",
    "generate-quiz",
    "generate-video-script",
    "generate-video-from-script",
    "generate-podcast-transcript",
    "generate-podcast-from-transcript",
    "generate-interactive-podcast",
    "generate-standalone-video",
    "post-process-video-output",
    "post-process-standalone-video",
    "process-video-completion",
    "generate-article-thumbnail",
)

# Job types that download, render or upload media get the long timeout.
MEDIA_JOB_TYPES = frozenset(
    {
        "generate-standalone-video",
        "post-process-video-output",
        "post-process-standalone-video",
        "process-video-completion",
        "generate-podcast-from-transcript",
        "generate-interactive-podcast",
    }
)


@dataclass(frozen=True)
class QueueConfig:
    redis_url: str
    queue_name: str
    max_attempts: int
    backoff_base_s: int
    backoff_cap_s: int
    job_timeout_s: int
    media_timeout_s: int
    producer_timeout_s: float
    consumer_connect_timeout_s: float
    failure_ttl_s: int


def load_queue_config() -> QueueConfig:
    return QueueConfig(
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        queue_name=os.getenv("RQ_QUEUE_NAME", "media"),
        max_attempts=max(1, int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))),
        backoff_base_s=max(1, int(os.getenv("QUEUE_BACKOFF_BASE_S", "2"))),
        backoff_cap_s=max(1, int(os.getenv("QUEUE_BACKOFF_CAP_S", "60"))),
        job_timeout_s=int(os.getenv("RQ_JOB_TIMEOUT", "300")),
        media_timeout_s=int(os.getenv("RQ_MEDIA_TIMEOUT", "1800")),
        producer_timeout_s=float(os.getenv("REDIS_PRODUCER_TIMEOUT_S", "5")),
        consumer_connect_timeout_s=float(os.getenv("REDIS_CONSUMER_CONNECT_TIMEOUT_S", "30")),
        failure_ttl_s=int(os.getenv("RQ_FAILURE_TTL_S", str(7 * 24 * 3600))),
    )


def backoff_intervals(base_s: int, max_attempts: int, cap_s: int) -> list[int]:
    """Delay before each retry: base * 2^attempt, capped."""
    return [min(base_s * 2**attempt, cap_s) for attempt in range(max(0, max_attempts - 1))]


def _timeout_seconds(job_type: str, config: QueueConfig) -> int:
    if job_type in MEDIA_JOB_TYPES:
        return config.media_timeout_s
    return config.job_timeout_s


def _credential_kwargs() -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if os.getenv("REDIS_USERNAME"):
        kwargs["username"] = os.getenv("REDIS_USERNAME")
    if os.getenv("REDIS_PASSWORD"):
        kwargs["password"] = os.getenv("REDIS_PASSWORD")
    return kwargs


def producer_redis(config: QueueConfig | None = None) -> Redis:
    """Fail-fast connection for request handlers: short timeouts, no retries."""
    config = config or load_queue_config()
    return Redis.from_url(
        config.redis_url,
        socket_connect_timeout=config.producer_timeout_s,
        socket_timeout=config.producer_timeout_s,
        retry=RedisRetry(NoBackoff(), 0),
        retry_on_timeout=False,
        **_credential_kwargs(),
    )


def consumer_redis(config: QueueConfig | None = None) -> Redis:
    """Patient connection for workers: blocking reads, reconnect forever."""
    config = config or load_queue_config()
    return Redis.from_url(
        config.redis_url,
        socket_connect_timeout=config.consumer_connect_timeout_s,
        socket_timeout=None,
        socket_keepalive=True,
        health_check_interval=30,
        retry=RedisRetry(ExponentialBackoff(cap=3.0, base=0.05), -1),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
        **_credential_kwargs(),
    )


def get_queue(connection: Redis, name: str | None = None) -> Queue:
    return Queue(name or load_queue_config().queue_name, connection=connection)


@dataclass(frozen=True)
class JobHandle:
    id: str
    job_type: str


class JobQueue:
    """Producer side: persists a ``Job`` row, then hands the job to RQ.

    The row id doubles as the RQ job id and as the generation token stored on
    the entity the job works on.
    """

    def __init__(
        self,
        session_factory,
        connection: Redis | None = None,
        config: QueueConfig | None = None,
        rq_queue: Queue | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or load_queue_config()
        self._connection = connection
        self._rq_queue = rq_queue

    @property
    def config(self) -> QueueConfig:
        return self._config

    def _queue(self) -> Queue:
        if self._rq_queue is None:
            connection = self._connection or producer_redis(self._config)
            self._rq_queue = Queue(self._config.queue_name, connection=connection)
        return self._rq_queue

    def _retry(self) -> Retry | None:
        if self._config.max_attempts <= 1:
            return None
        return Retry(
            max=self._config.max_attempts - 1,
            interval=backoff_intervals(
                self._config.backoff_base_s,
                self._config.max_attempts,
                self._config.backoff_cap_s,
            ),
        )

    def enqueue(self, job_type: str, payload: dict[str, Any], job_id: str | None = None) -> JobHandle:
        from pipeline.jobs import rq_on_failure, rq_on_success, run_job

        if job_type not in JOB_TYPES:
            raise ValidationError(code="unknown_job_type", message=f"unknown job type: {job_type}")

        session = self._session_factory()
        try:
            job = Job(
                id=UUID(str(job_id)) if job_id else uuid4(),
                job_type=job_type,
                status="queued",
                attempt=1,
                max_attempts=self._config.max_attempts,
                payload=dict(payload),
                queued_at=datetime.now(UTC),
            )
            session.add(job)
            session.commit()

            try:
                self._queue().enqueue(
                    run_job,
                    str(job.id),
                    job_type,
                    dict(payload),
                    job_id=str(job.id),
                    job_timeout=_timeout_seconds(job_type, self._config),
                    retry=self._retry(),
                    failure_ttl=self._config.failure_ttl_s,
                    on_failure=rq_on_failure,
                    on_success=rq_on_success,
                )
            except RedisError as exc:
                job.status = "failed"
                job.error_payload = {"code": "enqueue_failed", "message": str(exc)[:300]}
                job.finished_at = datetime.now(UTC)
                session.commit()
                logger.error("enqueue %s failed: %s", job_type, exc)
                raise EnqueueError(
                    code="queue_unavailable",
                    message="job broker is unreachable",
                ) from exc

            logger.info("enqueued %s job=%s", job_type, job.id)
            return JobHandle(id=str(job.id), job_type=job_type)
        finally:
            session.close()


def consume(
    queue_names: list[str] | None = None,
    *,
    burst: bool = False,
    simple: bool = True,
    config: QueueConfig | None = None,
) -> bool:
    """Run one worker slot. Each slot processes a single job at a time."""
    config = config or load_queue_config()
    connection = consumer_redis(config)
    queues = [Queue(name, connection=connection) for name in (queue_names or [config.queue_name])]
    worker_cls = SimpleWorker if simple else Worker
    worker = worker_cls(queues, connection=connection)
    return worker.work(with_scheduler=True, burst=burst)
