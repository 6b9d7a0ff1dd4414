"""Pure transition rules for every generated output.

Each function inspects an entity snapshot and returns a ``Result`` holding a
``Transition``: the statuses the row must still be in, the values to write and
the follow-up commands the caller runs once the conditional write applied.
Nothing here touches the database or the queue.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pipeline.errors import InvalidStateTransition, Result, ValidationError


class OutputKind(str, Enum):
    VIDEO = "video"
    PODCAST = "podcast"
    INTERACTIVE_PODCAST = "interactive_podcast"
    AUDIO = "audio"
    QUIZ = "quiz"
    STANDALONE_VIDEO = "standalone_video"


class OutputStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SCRIPT_READY = "SCRIPT_READY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({OutputStatus.COMPLETED.value, OutputStatus.FAILED.value})
ACTIVE_STATUSES = (
    OutputStatus.PENDING.value,
    OutputStatus.PROCESSING.value,
    OutputStatus.SCRIPT_READY.value,
)
SCRIPTED_KINDS = frozenset({OutputKind.VIDEO, OutputKind.PODCAST})

# First job for a fresh generation cycle, and the media job that follows approval.
INITIAL_JOB_TYPES = {
    OutputKind.VIDEO: "generate-video-script",
    OutputKind.PODCAST: "generate-podcast-transcript",
    OutputKind.INTERACTIVE_PODCAST: "generate-interactive-podcast",
    OutputKind.AUDIO: "generate-audio",
    OutputKind.QUIZ: "generate-quiz",
    OutputKind.STANDALONE_VIDEO: "generate-standalone-video",
}
MEDIA_JOB_TYPES = {
    OutputKind.VIDEO: "generate-video-from-script",
    OutputKind.PODCAST: "generate-podcast-from-transcript",
}


@dataclass(frozen=True)
class EnqueueJob:
    job_type: str
    payload: dict[str, Any]
    job_id: str | None = None
    critical: bool = True


@dataclass(frozen=True)
class RecomputeRollup:
    submission_id: Any


@dataclass(frozen=True)
class Transition:
    kind: OutputKind
    entity_id: Any
    expected_from: tuple[str, ...]
    to: str
    values: dict[str, Any] = field(default_factory=dict)
    guards: dict[str, Any] = field(default_factory=dict)
    commands: tuple[Any, ...] = ()

    def row_values(self) -> dict[str, Any]:
        data = dict(self.values)
        data["status"] = self.to
        return data


def job_payload(kind: OutputKind, entity, organization_id) -> dict[str, Any]:
    if kind == OutputKind.STANDALONE_VIDEO:
        return {"standaloneVideoId": str(entity.id), "organizationId": str(organization_id)}
    return {
        "outputId": str(entity.id),
        "submissionId": str(entity.submission_id),
        "organizationId": str(organization_id),
    }


def _rollup_commands(kind: OutputKind, entity) -> tuple[Any, ...]:
    if kind == OutputKind.STANDALONE_VIDEO:
        return ()
    return (RecomputeRollup(entity.submission_id),)


def _reject(kind: OutputKind, entity, action: str) -> Result:
    return Result.failure(
        InvalidStateTransition(
            code="invalid_state_transition",
            message=f"cannot {action} {kind.value} while {entity.status}",
        )
    )


def _has_script(entity) -> bool:
    script = getattr(entity, "script", None)
    return bool(script and script.strip())


def start(kind: OutputKind, entity, *, job_id: str, organization_id) -> Result:
    """PENDING -> PROCESSING and enqueue the first job of the cycle."""
    if entity.status != OutputStatus.PENDING.value:
        return _reject(kind, entity, "start")
    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=(OutputStatus.PENDING.value,),
            to=OutputStatus.PROCESSING.value,
            values={"error": None, "generation_token": job_id},
            commands=_rollup_commands(kind, entity)
            + (
                EnqueueJob(
                    INITIAL_JOB_TYPES[kind],
                    job_payload(kind, entity, organization_id),
                    job_id=job_id,
                ),
            ),
        )
    )


def script_ready(kind: OutputKind, entity, *, script: str, job_id: str) -> Result:
    if kind not in SCRIPTED_KINDS:
        return _reject(kind, entity, "hold a script for")
    if entity.status != OutputStatus.PROCESSING.value:
        return _reject(kind, entity, "mark script ready for")
    if not (script or "").strip():
        return Result.failure(
            ValidationError(code="empty_script", message="generated script is empty")
        )
    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=(OutputStatus.PROCESSING.value,),
            to=OutputStatus.SCRIPT_READY.value,
            values={"script": script, "generation_token": None},
            guards={"generation_token": job_id},
            commands=_rollup_commands(kind, entity),
        )
    )


def edit_script(kind: OutputKind, entity, *, script: str) -> Result:
    if kind not in SCRIPTED_KINDS or entity.status != OutputStatus.SCRIPT_READY.value:
        return _reject(kind, entity, "edit the script of")
    if not (script or "").strip():
        return Result.failure(ValidationError(code="empty_script", message="script must not be empty"))
    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=(OutputStatus.SCRIPT_READY.value,),
            to=OutputStatus.SCRIPT_READY.value,
            values={"script": script},
        )
    )


def request_media(kind: OutputKind, entity, *, job_id: str, organization_id) -> Result:
    """SCRIPT_READY -> PROCESSING once a human approved the script."""
    if kind not in SCRIPTED_KINDS or entity.status != OutputStatus.SCRIPT_READY.value:
        return _reject(kind, entity, "generate media for")
    if not _has_script(entity):
        return Result.failure(
            ValidationError(code="script_required", message="script must not be empty")
        )
    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=(OutputStatus.SCRIPT_READY.value,),
            to=OutputStatus.PROCESSING.value,
            values={"error": None, "generation_token": job_id},
            commands=_rollup_commands(kind, entity)
            + (
                EnqueueJob(
                    MEDIA_JOB_TYPES[kind],
                    job_payload(kind, entity, organization_id),
                    job_id=job_id,
                ),
            ),
        )
    )


def complete(kind: OutputKind, entity, *, artifacts: dict[str, Any], guards: dict[str, Any] | None = None) -> Result:
    if entity.status != OutputStatus.PROCESSING.value:
        return _reject(kind, entity, "complete")
    values = dict(artifacts)
    values.update({"error": None, "generation_token": None})
    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=(OutputStatus.PROCESSING.value,),
            to=OutputStatus.COMPLETED.value,
            values=values,
            guards=dict(guards or {}),
            commands=_rollup_commands(kind, entity),
        )
    )


def fail(
    kind: OutputKind,
    entity,
    *,
    message: str,
    guards: dict[str, Any] | None = None,
    from_statuses: tuple[str, ...] = ACTIVE_STATUSES,
) -> Result:
    """Non-terminal state -> FAILED. Terminal rows are left untouched."""
    if entity.status in TERMINAL_STATUSES or entity.status not in from_statuses:
        return _reject(kind, entity, "fail")
    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=tuple(from_statuses),
            to=OutputStatus.FAILED.value,
            values={"error": message or "Generation failed", "generation_token": None},
            guards=dict(guards or {}),
            commands=_rollup_commands(kind, entity),
        )
    )


def regenerate(kind: OutputKind, entity, *, job_id: str, organization_id) -> Result:
    """Human-triggered fresh cycle for a terminal row.

    Provider handles are cleared so late callbacks for the abandoned attempt no
    longer resolve to this row.
    """
    if entity.status not in TERMINAL_STATUSES:
        return _reject(kind, entity, "regenerate")

    values: dict[str, Any] = {"error": None, "generation_token": job_id}
    for handle in ("heygen_video_id", "submagic_project_id", "edited_video_url"):
        if hasattr(entity, handle):
            values[handle] = None

    job_type = INITIAL_JOB_TYPES[kind]
    if kind in SCRIPTED_KINDS and _has_script(entity):
        job_type = MEDIA_JOB_TYPES[kind]

    return Result.success(
        Transition(
            kind=kind,
            entity_id=entity.id,
            expected_from=(entity.status,),
            to=OutputStatus.PROCESSING.value,
            values=values,
            commands=_rollup_commands(kind, entity)
            + (EnqueueJob(job_type, job_payload(kind, entity, organization_id), job_id=job_id),),
        )
    )
