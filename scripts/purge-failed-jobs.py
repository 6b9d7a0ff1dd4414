#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select

from db.models import Job
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Purge failed (and optionally dead) jobs older than N minutes")
    parser.add_argument("--older-min", type=int, default=60)
    parser.add_argument("--include-dead", action="store_true", help="Also drop dead-letter rows")
    args = parser.parse_args()

    statuses = ["failed", "dead"] if args.include_dead else ["failed"]
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=args.older_min)
    session = SessionLocal()
    try:
        stmt = select(Job.id).where(Job.status.in_(statuses), Job.updated_at < cutoff)
        ids = [row[0] for row in session.execute(stmt).all()]
        if not ids:
            print("[purge] removed 0 job(s)")
            return
        session.execute(delete(Job).where(Job.id.in_(ids)))
        session.commit()
        print(f"[purge] removed {len(ids)} job(s) ({','.join(statuses)})")
    finally:
        session.close()


if __name__ == "__main__":
    main()
