from __future__ import annotations

from datetime import UTC, datetime
import logging
from uuid import UUID

from rq.job import Job as RQJob

from db.models import Job
from pipeline import state_machine
from pipeline.context import build_context
from pipeline.effects import apply_transition
from pipeline.errors import PipelineError, ValidationError
from pipeline.handlers import HANDLERS, entity_for_job

logger = logging.getLogger(__name__)


def _update_job(
    session,
    job_id: str,
    status: str,
    result: dict | None = None,
    error: dict | None = None,
) -> Job:
    job = session.get(Job, UUID(str(job_id)))
    if job is None:
        raise RuntimeError(f"Job not found: {job_id}")
    now = datetime.now(UTC)
    job.status = status
    if status == "running":
        job.started_at = now
    if status in {"succeeded", "failed", "dead"}:
        job.finished_at = now
    if result is not None:
        job.result = result
    if error is not None:
        job.error_payload = error
    job.updated_at = now
    session.add(job)
    return job


def _error_payload(exc: BaseException | None, exc_type=None) -> dict:
    if isinstance(exc, PipelineError):
        return {"code": exc.code, "message": exc.message[:500], "retryable": exc.retryable}
    name = exc_type.__name__ if exc_type is not None else type(exc).__name__
    return {"code": name, "message": str(exc)[:500], "retryable": True}


def fail_job_entity(ctx, session, job_id: str, job_type: str, payload: dict, message: str) -> bool:
    """Mark the entity a job worked on FAILED, if the job still owns it."""
    resolved, guards = entity_for_job(session, job_type, payload or {}, job_id=job_id)
    if resolved is None:
        return False
    result = state_machine.fail(resolved.kind, resolved.entity, message=message, guards=guards)
    if not result.ok:
        logger.info("%s %s: not failing (%s)", resolved.kind.value, resolved.entity.id, result.error)
        return False
    return apply_transition(ctx, session, result.value)


def execute_job(ctx, job_id: str, job_type: str, payload: dict) -> dict:
    """Run one job attempt.

    Non-retryable pipeline errors settle the job here: the entity is marked
    FAILED, the row goes to the dead letter and the RQ job ends normally.
    Anything else propagates so RQ can retry it.
    """

    session = ctx.session_factory()
    try:
        _update_job(session, job_id, "running")
        session.commit()

        handler = HANDLERS.get(job_type)
        try:
            if handler is None:
                raise ValidationError(code="unknown_job_type", message=f"unknown job type: {job_type}")
            result = handler(ctx, session, job_id, payload) or {}
        except PipelineError as exc:
            session.rollback()
            if exc.retryable:
                logger.warning("job %s (%s) attempt failed: %s", job_id, job_type, exc)
                raise
            logger.error("job %s (%s) failed permanently: %s", job_id, job_type, exc)
            fail_job_entity(ctx, session, job_id, job_type, payload, exc.message)
            _update_job(session, job_id, "dead", error=_error_payload(exc))
            session.commit()
            return {"dead": exc.code}

        _update_job(session, job_id, "running", result=jsonable(result))
        session.commit()
        logger.info("job %s (%s) done", job_id, job_type)
        return result
    finally:
        session.close()


def jsonable(value):
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def run_job(job_id: str, job_type: str, payload: dict) -> dict:
    """RQ entry point."""
    return execute_job(build_context(), job_id, job_type, payload)


def rq_on_success(job: RQJob, connection, result, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
    ctx = build_context()
    session = ctx.session_factory()
    try:
        job_id = job.args[0] if job.args else None
        if job_id is None:
            return
        row = session.get(Job, UUID(str(job_id)))
        if row is None or row.status == "dead":
            return
        _update_job(session, job_id, "succeeded")
        session.commit()
    finally:
        session.close()


def rq_on_failure(job: RQJob, connection, exc_type, exc_value, traceback) -> None:  # type: ignore[no-untyped-def]
    """Called by RQ after every failed attempt, before it schedules a retry."""
    ctx = build_context()
    session = ctx.session_factory()
    try:
        if not job.args:
            return
        job_id, job_type, payload = job.args[0], job.args[1], job.args[2]
        row = session.get(Job, UUID(str(job_id)))
        if row is None:
            logger.warning("failure callback for unknown job %s", job_id)
            return
        error = _error_payload(exc_value, exc_type)
        if row.attempt < row.max_attempts:
            row.attempt += 1
            _update_job(session, job_id, "queued", error=error)
            session.commit()
            logger.warning("job %s (%s) will retry, attempt %s/%s", job_id, job_type, row.attempt, row.max_attempts)
            return

        _update_job(session, job_id, "dead", error=error)
        session.commit()
        logger.error("job %s (%s) exhausted %s attempts: %s", job_id, job_type, row.max_attempts, error["message"])
        fail_job_entity(ctx, session, job_id, job_type, payload, error["message"] or "Generation failed")
    finally:
        session.close()
