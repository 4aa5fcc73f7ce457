"""
Worker loop that delivers queued outgoing webhook jobs.

Job ids arrive on the queue; a job is only processed after it has been
claimed in the database (WAITING -> DELIVERING), so several workers can share
one queue. Jobs that were never queued, or whose worker died mid-delivery,
are picked up by the database fallback and ``requeue_stale_locks``.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from backend.config import get_settings
from backend.db import DbClient, DeliveryJobRecord
from backend.delivery import DeliveryResult, WebhookDeliverer
from backend.dependencies import get_db_client, get_deliverer, get_queue_client
from backend.queue import JobQueue
from shared.types import DeliveryStatus

logger = logging.getLogger(__name__)


def process_job(
    job: DeliveryJobRecord, db: DbClient, deliverer: WebhookDeliverer
) -> Optional[DeliveryResult]:
    webhook = db.get_outgoing_webhook(job.webhook_id)
    if not webhook:
        logger.warning("[%s] Webhook %s no longer exists", job.job_id, job.webhook_id)
        db.update_delivery_job(
            job.job_id, status=DeliveryStatus.FAILED, last_error="Webhook not found"
        )
        return None

    result = deliverer.deliver(
        webhook,
        job.event_type,
        job.data,
        idempotency_key=job.idempotency_key,
        job_id=job.job_id,
    )
    if result.success:
        status = DeliveryStatus.SUCCESS
    elif result.dead_lettered:
        status = DeliveryStatus.DEAD_LETTERED
    else:
        status = DeliveryStatus.FAILED
    db.update_delivery_job(
        job.job_id,
        status=status,
        attempts=job.attempts + result.attempts,
        last_error=result.error,
        delivery_id=result.delivery_id,
    )
    logger.info("[%s] Delivery finished with %s", job.job_id, status.name)
    return result


def process_next(
    *,
    db: Optional[DbClient] = None,
    queue: Optional[JobQueue] = None,
    deliverer: Optional[WebhookDeliverer] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Fetch and process one job from the queue (or DB fallback).

    Queued ids that are missing or already claimed are skipped and the next
    id is tried, so False means no claimable job was left.
    """
    db = db or get_db_client()
    queue = queue or get_queue_client()
    deliverer = deliverer or get_deliverer()

    job = None
    while job is None:
        job_id = queue.dequeue(block=block, timeout=timeout)
        if not job_id:
            break
        job = db.claim_delivery_job(job_id)
        if not job:
            logger.info("Skipping job %s: missing or already claimed", job_id)

    if job is None:
        # Fallback for WAITING jobs that were never queued.
        job = db.claim_next_waiting_job()
        if not job:
            return False

    try:
        process_job(job, db, deliverer)
    except Exception as exc:
        logger.exception("[%s] Delivery job failed", job.job_id)
        db.update_delivery_job(job.job_id, status=DeliveryStatus.FAILED, last_error=str(exc))
    return True


def drain(
    *,
    db: Optional[DbClient] = None,
    queue: Optional[JobQueue] = None,
    deliverer: Optional[WebhookDeliverer] = None,
) -> int:
    """Process jobs without blocking until none can be claimed. Returns the count."""
    processed = 0
    while process_next(db=db, queue=queue, deliverer=deliverer, block=False):
        processed += 1
    return processed


def run_loop(
    poll_interval_seconds: Optional[float] = None,
    lock_timeout_seconds: Optional[float] = None,
) -> None:
    """
    Polling loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    settings = get_settings()
    poll_interval_seconds = poll_interval_seconds or settings.worker_poll_interval_seconds
    lock_timeout_seconds = lock_timeout_seconds or settings.worker_lock_timeout_seconds
    db = get_db_client()
    queue = get_queue_client()
    deliverer = get_deliverer()
    logger.info("Webhook worker started (poll=%ss)", poll_interval_seconds)
    while True:
        try:
            requeued = db.requeue_stale_locks(lock_timeout_seconds=lock_timeout_seconds)
            if requeued:
                logger.warning("Requeued %d stale delivery jobs", requeued)
        except Exception:
            logger.exception("Failed to requeue stale locks")
        processed = process_next(
            db=db,
            queue=queue,
            deliverer=deliverer,
            block=True,
            timeout=max(1, int(poll_interval_seconds)),
        )
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO, format="%(name)s %(levelname)s %(asctime)s %(message)s"
    )
    run_loop()
