"""
Inspect and replay dead-lettered webhook deliveries.

Examples:
    python scripts/dead_letter_cli.py list --webhook-id <id>
    python scripts/dead_letter_cli.py show del_1700000000000_abc1234
    python scripts/dead_letter_cli.py retry del_1700000000000_abc1234
    python scripts/dead_letter_cli.py purge --yes
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.dead_letter import DeadLetterNotFoundError, DeadLetterQueue, requeue_dead_letter
from backend.db import DbClient
from backend.dependencies import get_db_client, get_dead_letter_queue, get_queue_client
from backend.queue import JobQueue

logger = logging.getLogger(__name__)


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def list_entries(dead_letters: DeadLetterQueue, limit: int, webhook_id: str | None) -> int:
    entries = dead_letters.list(limit=limit, webhook_id=webhook_id)
    for entry in entries:
        print(
            f"{entry.delivery_id}  {_format_time(entry.failed_at)}  "
            f"{entry.event_type:<28} webhook={entry.webhook_id} "
            f"attempts={entry.attempts}  {entry.error}"
        )
    print(f"{len(entries)} shown, {dead_letters.size()} total")
    return 0


def show_entry(dead_letters: DeadLetterQueue, delivery_id: str) -> int:
    entry = dead_letters.get(delivery_id)
    if not entry:
        logger.error("Dead letter %s not found", delivery_id)
        return 1
    print(json.dumps(entry.as_dict(), indent=2, default=str))
    return 0


def retry_entry(
    dead_letters: DeadLetterQueue, db: DbClient, queue: JobQueue, delivery_id: str
) -> int:
    try:
        job = requeue_dead_letter(dead_letters, db, queue, delivery_id)
    except DeadLetterNotFoundError as exc:
        logger.error("%s", exc)
        return 1
    print(job.job_id)
    return 0


def purge(dead_letters: DeadLetterQueue, confirmed: bool) -> int:
    if not confirmed:
        logger.error("Refusing to purge without --yes")
        return 1
    removed = dead_letters.clear()
    logger.info("Purged %d dead letters", removed)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Dead-letter queue maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list", help="List dead letters, newest first")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--webhook-id", default=None)

    show_parser = sub.add_parser("show", help="Print one dead letter as JSON")
    show_parser.add_argument("delivery_id")

    retry_parser = sub.add_parser("retry", help="Requeue a dead letter for delivery")
    retry_parser.add_argument("delivery_id")

    purge_parser = sub.add_parser("purge", help="Delete every dead letter")
    purge_parser.add_argument("--yes", action="store_true", help="Confirm the purge")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    dead_letters = get_dead_letter_queue()
    if args.command == "list":
        return list_entries(dead_letters, args.limit, args.webhook_id)
    if args.command == "show":
        return show_entry(dead_letters, args.delivery_id)
    if args.command == "retry":
        return retry_entry(dead_letters, get_db_client(), get_queue_client(), args.delivery_id)
    return purge(dead_letters, args.yes)


if __name__ == "__main__":
    raise SystemExit(main())
