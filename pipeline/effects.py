from __future__ import annotations

import logging

from db.models import (
    AudioOutput,
    InteractivePodcastOutput,
    PodcastOutput,
    QuizOutput,
    StandaloneVideo,
    VideoOutput,
)
from db.repository import update_if_current
from pipeline.errors import EnqueueError
from pipeline.rollup import refresh_submission_status
from pipeline import state_machine
from pipeline.state_machine import EnqueueJob, OutputKind, RecomputeRollup, Transition

logger = logging.getLogger(__name__)

MODELS = {
    OutputKind.VIDEO: VideoOutput,
    OutputKind.PODCAST: PodcastOutput,
    OutputKind.INTERACTIVE_PODCAST: InteractivePodcastOutput,
    OutputKind.AUDIO: AudioOutput,
    OutputKind.QUIZ: QuizOutput,
    OutputKind.STANDALONE_VIDEO: StandaloneVideo,
}


def model_for(kind: OutputKind):
    return MODELS[kind]


def apply_transition(ctx, session, transition: Transition) -> bool:
    """Write the transition conditionally, commit, then run its commands.

    Returns False (and runs nothing) when the row moved on in the meantime.
    A critical enqueue failure propagates as ``EnqueueError`` after the state
    write has been committed; the caller decides how to fail the entity.
    """

    model = model_for(transition.kind)
    applied = update_if_current(
        session,
        model,
        transition.entity_id,
        transition.expected_from,
        transition.row_values(),
        guards=transition.guards,
    )
    if not applied:
        session.rollback()
        logger.info(
            "%s %s: skipped transition to %s (state changed concurrently)",
            transition.kind.value,
            transition.entity_id,
            transition.to,
        )
        return False
    session.commit()
    logger.info("%s %s -> %s", transition.kind.value, transition.entity_id, transition.to)
    run_commands(ctx, session, transition.commands)
    return True


def claim_for_job(session, kind: OutputKind, entity_id, job_id: str) -> bool:
    """Take ownership of an entity for one generation job.

    A PENDING row goes to the first job that asks. A PROCESSING row only
    belongs to the job whose id is its generation token, so duplicate or
    superseded jobs get False.
    """

    model = model_for(kind)
    claimed = update_if_current(
        session,
        model,
        entity_id,
        ("PENDING",),
        {"status": "PROCESSING", "generation_token": job_id, "error": None},
    )
    if claimed:
        submission_id = getattr(session.get(model, entity_id), "submission_id", None)
        if submission_id is not None:
            refresh_submission_status(session, submission_id)
        session.commit()
        return True
    owned = update_if_current(
        session,
        model,
        entity_id,
        ("PROCESSING",),
        {"generation_token": job_id},
        guards={"generation_token": job_id},
    )
    session.commit()
    return owned


def run_commands(ctx, session, commands) -> None:
    for command in commands:
        if isinstance(command, RecomputeRollup):
            refresh_submission_status(session, command.submission_id)
            session.commit()
        elif isinstance(command, EnqueueJob):
            try:
                ctx.queue.enqueue(command.job_type, command.payload, job_id=command.job_id)
            except EnqueueError:
                if command.critical:
                    raise
                logger.warning("non-critical enqueue of %s dropped", command.job_type)
        else:
            raise TypeError(f"unknown command: {command!r}")


ENQUEUE_FAILED_MESSAGE = "Could not schedule the generation job"


def apply_or_fail(ctx, session, transition: Transition) -> EnqueueError | None:
    """Apply a transition that enqueues work; fail the entity if the broker is down.

    Returns the enqueue error, or None when the job was handed to the queue
    (or the transition no longer applied).
    """

    try:
        apply_transition(ctx, session, transition)
    except EnqueueError as exc:
        entity = session.get(model_for(transition.kind), transition.entity_id)
        failed = state_machine.fail(
            transition.kind,
            entity,
            message=ENQUEUE_FAILED_MESSAGE,
            guards={"generation_token": transition.values.get("generation_token")},
        )
        if failed.ok:
            apply_transition(ctx, session, failed.value)
        logger.error("%s %s: %s", transition.kind.value, transition.entity_id, exc)
        return exc
    return None
