#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import sys
from uuid import UUID, uuid4

from db.models import Submission
from pipeline import state_machine
from pipeline.context import build_context
from pipeline.effects import apply_or_fail, model_for
from pipeline.log import configure_logging
from pipeline.state_machine import OutputKind


def main() -> None:
    parser = ArgumentParser(description="Start a fresh generation cycle for a finished output")
    parser.add_argument("--kind", required=True, choices=[kind.value for kind in OutputKind])
    parser.add_argument("--id", required=True, type=UUID, help="Output or standalone video id")
    args = parser.parse_args()

    configure_logging()
    ctx = build_context()
    kind = OutputKind(args.kind)
    session = ctx.session_factory()
    try:
        entity = session.get(model_for(kind), args.id)
        if entity is None:
            print(f"[regenerate] {kind.value} {args.id} not found")
            sys.exit(1)
        if kind == OutputKind.STANDALONE_VIDEO:
            organization_id = entity.organization_id
        else:
            organization_id = session.get(Submission, entity.submission_id).organization_id

        result = state_machine.regenerate(kind, entity, job_id=str(uuid4()), organization_id=organization_id)
        if not result.ok:
            print(f"[regenerate] rejected: {result.error}")
            sys.exit(1)
        error = apply_or_fail(ctx, session, result.value)
        if error is not None:
            print(f"[regenerate] enqueue failed: {error}")
            sys.exit(1)
        print(f"[regenerate] {kind.value} {args.id} -> PROCESSING job={result.value.values['generation_token']}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
