#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import logging
import os
import threading

from db.session import engine
from pipeline.context import build_context
from pipeline.log import configure_logging
from pipeline.queue import consume
from pipeline.reaper import reap_stuck_outputs

logger = logging.getLogger("worker")


def _reap_forever(interval_s: int, stop: threading.Event) -> None:
    ctx = build_context()
    while not stop.wait(interval_s):
        try:
            reap_stuck_outputs(ctx)
        except Exception:
            logger.exception("reaper pass failed")


def main() -> None:
    parser = ArgumentParser(description="Start a media pipeline worker slot")
    parser.add_argument("--queue", action="append", help="Queue name (repeatable, default RQ_QUEUE_NAME)")
    parser.add_argument("--burst", action="store_true", help="Process queued jobs and exit")
    parser.add_argument(
        "--reap-interval",
        type=int,
        default=int(os.getenv("REAPER_INTERVAL_S", "300")),
        help="Seconds between stuck-output sweeps; 0 disables",
    )
    args = parser.parse_args()

    configure_logging()
    if hasattr(os, "register_at_fork"):
        os.register_at_fork(after_in_child=lambda: engine.dispose())

    stop = threading.Event()
    if args.reap_interval > 0 and not args.burst:
        threading.Thread(target=_reap_forever, args=(args.reap_interval, stop), daemon=True).start()
    try:
        consume(args.queue, burst=args.burst, simple=os.getenv("RQ_SIMPLE_WORKER", "1") == "1")
    finally:
        stop.set()


if __name__ == "__main__":
    main()
