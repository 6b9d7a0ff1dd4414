#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import time

from pipeline.context import build_context
from pipeline.log import configure_logging
from pipeline.reaper import expire_running_jobs, reap_stuck_outputs


def main() -> None:
    parser = ArgumentParser(description="Fail outputs stuck in PROCESSING past the timeout window")
    parser.add_argument("--older-min", type=int, default=None, help="Defaults to OUTPUT_TIMEOUT_MIN")
    parser.add_argument("--loop-interval", type=int, default=0, help="Repeat every N seconds; 0 runs once")
    args = parser.parse_args()

    configure_logging()
    ctx = build_context()
    while True:
        counts = reap_stuck_outputs(ctx, older_than_min=args.older_min)
        expired = expire_running_jobs(ctx, older_than_min=args.older_min)
        reaped = ", ".join(f"{kind}={count}" for kind, count in counts.items())
        print(f"[reap] {reaped} jobs_expired={expired}")
        if args.loop_interval <= 0:
            return
        time.sleep(args.loop_interval)


if __name__ == "__main__":
    main()
