"""
Retry scheduler.

Due markers live in one sorted set scored by due time (ms). The sweep
claims a marker by removing it; only the caller whose ZREM succeeds
re-enqueues the job, so overlapping sweeps never double-enqueue.

Processing leases use the same claim pattern for jobs whose outcome was
never written.
"""
import time
from datetime import datetime, timezone
from typing import Callable

import structlog

from invite_dispatch.models.job import Job, JobStatus
from invite_dispatch.services import error_classifier
from invite_dispatch.services.error_classifier import ErrorClassification
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.kv_store import KeyValueStore
from invite_dispatch.services.priority_queue import PriorityQueue

logger = structlog.get_logger()

RETRY_MARKERS_KEY = "retry:due"
PROCESSING_LEASES_KEY = "processing:leases"


class RetryScheduler:
    """Turns RETRYING jobs back into PENDING ones once their backoff elapses."""

    def __init__(
        self,
        store: KeyValueStore,
        job_store: JobStore,
        queue: PriorityQueue,
        clock: Callable[[], float] = time.time,
        sweep_batch_size: int = 100,
    ):
        self.store = store
        self.job_store = job_store
        self.queue = queue
        self.clock = clock
        self.sweep_batch_size = sweep_batch_size

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def backoff_delay_ms(self, job: Job, classification: ErrorClassification | None = None) -> int:
        """Delay for the job's next attempt, from the classifier's policy."""
        classification = classification or error_classifier.classify(job.error_code)
        # Non-retryable verdicts only get here when a send function forced a retry
        backoff = classification.backoff or error_classifier.DEFAULT_BACKOFF
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        return backoff.delay_ms(job.attempts, now=now)

    async def schedule_retry(self, job: Job, classification: ErrorClassification | None = None) -> datetime:
        """
        Persist a due marker for a RETRYING job.

        Returns the due time. The caller owns the job record; this only
        writes the marker.
        """
        if job.status != JobStatus.RETRYING:
            raise ValueError(f"Job {job.id} is {job.status.value}, not retrying")

        delay_ms = self.backoff_delay_ms(job, classification)
        due_ms = self.now_ms() + delay_ms
        await self.store.zadd(RETRY_MARKERS_KEY, job.id, due_ms)

        due_at = datetime.fromtimestamp(due_ms / 1000, tz=timezone.utc)
        logger.info(
            "retry_scheduled",
            job_id=job.id,
            attempts=job.attempts,
            delay_ms=delay_ms,
            due_at=due_at.isoformat(),
        )
        return due_at

    async def process_due_retries(self) -> int:
        """
        Re-enqueue every job whose marker is due.

        Returns the number of jobs put back on their queues.
        """
        due_ids = await self.store.zrangebyscore(
            RETRY_MARKERS_KEY, self.now_ms(), limit=self.sweep_batch_size
        )
        requeued = 0

        for job_id in due_ids:
            claimed = await self.store.zrem(RETRY_MARKERS_KEY, job_id)
            if not claimed:
                continue  # another sweep got it

            async with self.job_store.lock(job_id) as owned:
                if not owned:
                    # Put the marker back so the next sweep retries it
                    await self.store.zadd(RETRY_MARKERS_KEY, job_id, self.now_ms())
                    continue

                job = await self.job_store.get(job_id)
                if job is None:
                    logger.warning("retry_job_lost", job_id=job_id)
                    continue
                if job.status != JobStatus.RETRYING:
                    logger.warning("retry_job_not_retrying", job_id=job_id, status=job.status.value)
                    continue

                job.transition(JobStatus.PENDING)
                await self.queue.enqueue(job)
                requeued += 1

        if requeued:
            logger.info("due_retries_processed", requeued=requeued)
        return requeued

    async def pending_retries(self) -> int:
        return await self.store.zcard(RETRY_MARKERS_KEY)

    async def hold_lease(self, job: Job) -> None:
        """Record that ``job`` is being processed; expires with the job lock."""
        await self.store.zadd(PROCESSING_LEASES_KEY, job.id, self.now_ms() + self.job_store.lock_ttl_ms)

    async def release_lease(self, job_id: str) -> None:
        await self.store.zrem(PROCESSING_LEASES_KEY, job_id)

    async def recover_stalled_jobs(self) -> int:
        """
        Settle jobs whose processing lease expired without an outcome.

        A PROCESSING job counts as a failed, retryable attempt; a PENDING
        one was popped but never started and goes back on its queue.
        Returns the number of jobs recovered.
        """
        expired_ids = await self.store.zrangebyscore(
            PROCESSING_LEASES_KEY, self.now_ms(), limit=self.sweep_batch_size
        )
        recovered = 0

        for job_id in expired_ids:
            if not await self.store.zrem(PROCESSING_LEASES_KEY, job_id):
                continue

            async with self.job_store.lock(job_id) as owned:
                if not owned:
                    await self.store.zadd(PROCESSING_LEASES_KEY, job_id, self.now_ms())
                    continue

                job = await self.job_store.get(job_id)
                if job is None:
                    logger.warning("stalled_job_lost", job_id=job_id)
                    continue

                if job.status == JobStatus.PENDING:
                    await self.queue.requeue(job.id, job.job_type, job.priority)
                elif job.status == JobStatus.PROCESSING:
                    classification = error_classifier.NETWORK_ERROR
                    status = job.record_failure(classification.user_message, None, retry=True)
                    if status == JobStatus.RETRYING:
                        job.next_retry_at = await self.schedule_retry(job, classification)
                    await self.job_store.save(job)
                else:
                    continue

                logger.warning("stalled_job_recovered", job_id=job_id, status=job.status.value)
                recovered += 1

        return recovered
