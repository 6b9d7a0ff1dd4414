#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from sqlalchemy import desc, func, select

from db.models import Job
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Show recent job statuses")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--summary", action="store_true")
    parser.add_argument("--status", help="Only jobs in this status (queued, running, succeeded, failed, dead)")
    parser.add_argument("--job-type")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        if args.summary:
            stmt = select(Job.job_type, Job.status, func.count()).group_by(Job.job_type, Job.status)
            for job_type, status, count in session.execute(stmt).all():
                print(f"[summary] {job_type} {status}: {count}")
            return
        stmt = select(Job)
        if args.status:
            stmt = stmt.where(Job.status == args.status)
        if args.job_type:
            stmt = stmt.where(Job.job_type == args.job_type)
        stmt = stmt.order_by(desc(Job.created_at)).limit(args.limit)
        for job in session.execute(stmt).scalars().all():
            print(
                f"[job] id={job.id} type={job.job_type} status={job.status} "
                f"attempt={job.attempt}/{job.max_attempts}"
            )
            if job.error_payload:
                print(f"[job] error={job.error_payload}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
