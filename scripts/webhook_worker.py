"""
Runs the outgoing webhook delivery worker.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.config import get_settings
from backend.worker import drain, run_loop

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Outgoing webhook delivery worker")
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=settings.worker_poll_interval_seconds,
        help="Seconds to wait on an empty queue",
    )
    parser.add_argument(
        "--lock-timeout-seconds",
        type=float,
        default=settings.worker_lock_timeout_seconds,
        help="Requeue DELIVERING jobs locked longer than this",
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Process jobs until none can be claimed, then exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    if args.drain:
        processed = drain()
        logger.info("Drained %d delivery jobs", processed)
        return 0

    run_loop(
        poll_interval_seconds=args.poll_interval_seconds,
        lock_timeout_seconds=args.lock_timeout_seconds,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
