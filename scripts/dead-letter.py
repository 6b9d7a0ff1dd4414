#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import json

from sqlalchemy import desc, func, select

from db.models import Job
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Inspect dead-lettered jobs")
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--job-type")
    parser.add_argument("--summary", action="store_true", help="Count dead jobs per type")
    parser.add_argument("--payload", action="store_true", help="Print the job payload too")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        if args.summary:
            stmt = select(Job.job_type, func.count()).where(Job.status == "dead").group_by(Job.job_type)
            rows = session.execute(stmt).all()
            if not rows:
                print("[dead] none")
            for job_type, count in rows:
                print(f"[dead] {job_type}: {count}")
            return

        stmt = select(Job).where(Job.status == "dead")
        if args.job_type:
            stmt = stmt.where(Job.job_type == args.job_type)
        stmt = stmt.order_by(desc(Job.updated_at)).limit(args.limit)
        for job in session.execute(stmt).scalars().all():
            error = job.error_payload or {}
            print(
                f"[dead] id={job.id} type={job.job_type} attempts={job.attempt}/{job.max_attempts} "
                f"finished={job.finished_at} code={error.get('code')}"
            )
            print(f"[dead]   {error.get('message', '')}")
            if args.payload:
                print(f"[dead]   payload={json.dumps(job.payload or {}, sort_keys=True)}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
