from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping
import logging

from sqlalchemy import select

from db.models import (
    AudioOutput,
    InteractivePodcastOutput,
    PodcastOutput,
    QuizOutput,
    Submission,
    VideoOutput,
)
from pipeline.state_machine import OutputKind, OutputStatus

logger = logging.getLogger(__name__)


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PARTIAL_COMPLETE = "PARTIAL_COMPLETE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Submission flag -> (kind, child model)
SUBMISSION_CHILDREN = (
    ("generate_video", OutputKind.VIDEO, VideoOutput),
    ("generate_podcast", OutputKind.PODCAST, PodcastOutput),
    ("generate_interactive_podcast", OutputKind.INTERACTIVE_PODCAST, InteractivePodcastOutput),
    ("generate_audio", OutputKind.AUDIO, AudioOutput),
    ("generate_quiz", OutputKind.QUIZ, QuizOutput),
)

_STARTED = {
    OutputStatus.PROCESSING.value,
    OutputStatus.SCRIPT_READY.value,
    OutputStatus.FAILED.value,
}


def requested_kinds(submission: Submission) -> list[OutputKind]:
    return [kind for flag, kind, _model in SUBMISSION_CHILDREN if getattr(submission, flag)]


def compute_rollup(
    requested: Iterable[OutputKind],
    statuses: Mapping[OutputKind, str | None],
) -> SubmissionStatus:
    """Derive a submission status from its requested children.

    A requested kind with no child row counts as PENDING.
    """

    values = [statuses.get(kind) or OutputStatus.PENDING.value for kind in requested]
    if not values:
        return SubmissionStatus.PENDING
    if all(value == OutputStatus.FAILED.value for value in values):
        return SubmissionStatus.FAILED
    if all(value == OutputStatus.COMPLETED.value for value in values):
        return SubmissionStatus.COMPLETED
    if any(value == OutputStatus.COMPLETED.value for value in values):
        return SubmissionStatus.PARTIAL_COMPLETE
    if any(value in _STARTED for value in values):
        return SubmissionStatus.PROCESSING
    return SubmissionStatus.PENDING


def child_statuses(session, submission: Submission) -> dict[OutputKind, str | None]:
    statuses: dict[OutputKind, str | None] = {}
    for flag, kind, model in SUBMISSION_CHILDREN:
        if not getattr(submission, flag):
            continue
        status = session.execute(
            select(model.status).where(model.submission_id == submission.id)
        ).scalar_one_or_none()
        statuses[kind] = status
    return statuses


def refresh_submission_status(session, submission_id) -> str | None:
    """Recompute and persist the rollup. The caller commits."""
    submission = session.get(Submission, submission_id)
    if submission is None:
        logger.warning("rollup skipped: submission %s not found", submission_id)
        return None
    status = compute_rollup(requested_kinds(submission), child_statuses(session, submission)).value
    if submission.status != status:
        logger.info(
            "submission %s rollup %s -> %s", submission.id, submission.status, status
        )
        submission.status = status
        session.add(submission)
        session.flush()
    return status
