from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging

from sqlalchemy import select

from db.models import Job
from pipeline import state_machine
from pipeline.effects import MODELS, apply_transition
from pipeline.errors import GenerationTimeoutError
from pipeline.state_machine import OutputStatus

logger = logging.getLogger(__name__)


def reap_stuck_outputs(ctx, older_than_min: int | None = None, now: datetime | None = None) -> dict[str, int]:
    """Fail every entity that sat in PROCESSING longer than the timeout window."""
    minutes = older_than_min if older_than_min is not None else ctx.settings.output_timeout_min
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(minutes=minutes)
    counts: dict[str, int] = {}

    session = ctx.session_factory()
    try:
        for kind, model in MODELS.items():
            stuck = (
                session.execute(
                    select(model).where(
                        model.status == OutputStatus.PROCESSING.value,
                        model.updated_at < cutoff,
                    )
                )
                .scalars()
                .all()
            )
            reaped = 0
            for entity in stuck:
                error = GenerationTimeoutError(
                    code="generation_timeout",
                    message=f"Generation timed out after {minutes} minutes",
                )
                result = state_machine.fail(
                    kind,
                    entity,
                    message=error.message,
                    guards={"generation_token": entity.generation_token},
                    from_statuses=(OutputStatus.PROCESSING.value,),
                )
                if result.ok and apply_transition(ctx, session, result.value):
                    reaped += 1
            if reaped:
                logger.warning("reaped %s stuck %s rows", reaped, kind.value)
            counts[kind.value] = reaped
        return counts
    finally:
        session.close()


def expire_running_jobs(ctx, older_than_min: int | None = None, now: datetime | None = None) -> int:
    """Mark ``running`` job rows whose worker vanished as failed."""
    minutes = older_than_min if older_than_min is not None else ctx.settings.output_timeout_min
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(minutes=minutes)
    session = ctx.session_factory()
    try:
        jobs = session.execute(select(Job).where(Job.status == "running", Job.updated_at < cutoff)).scalars().all()
        for job in jobs:
            job.status = "failed"
            job.error_payload = {"code": "worker_lost", "message": f"auto-cleanup: running > {minutes} min"}
            job.finished_at = now
            job.updated_at = now
            session.add(job)
        session.commit()
        return len(jobs)
    finally:
        session.close()
