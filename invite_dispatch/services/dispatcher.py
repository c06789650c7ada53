"""
Dispatcher: pops one job, enforces the send rate, runs the send function
and moves the job through its state machine.

Safe to run from several workers at once: the pop is atomic and every
status change happens under the job's lock.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from invite_dispatch.config import settings
from invite_dispatch.errors import StoreTimeoutError
from invite_dispatch.logging_config import get_logger
from invite_dispatch.models.job import Job, JobStatus, JobType
from invite_dispatch.routes import metrics
from invite_dispatch.services import error_classifier
from invite_dispatch.services.error_classifier import ErrorClassification
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.priority_queue import PriorityQueue
from invite_dispatch.services.rate_limiter import RateLimiter
from invite_dispatch.services.retry_scheduler import RetryScheduler


@dataclass
class SendResult:
    """What a send function reports back for one job."""
    success: bool
    result: Any = None
    error: str | None = None
    error_code: int | None = None
    retry: bool = False
    classification: ErrorClassification | None = field(default=None, repr=False)

    @classmethod
    def ok(cls, result: Any = None) -> "SendResult":
        return cls(success=True, result=result)

    @classmethod
    def from_classification(cls, classification: ErrorClassification) -> "SendResult":
        return cls(
            success=False,
            error=classification.user_message,
            error_code=classification.code,
            retry=classification.retryable,
            classification=classification,
        )


SendFn = Callable[[Job], Awaitable[SendResult]]

OUTCOME_WRITE_ATTEMPTS = 3
OUTCOME_WRITE_BACKOFF_SECONDS = 0.1


class Dispatcher:
    """Processes one job per ``process_queue`` call for a single job type."""

    def __init__(
        self,
        queue: PriorityQueue,
        job_store: JobStore,
        rate_limiter: RateLimiter,
        retry_scheduler: RetryScheduler,
        job_type: JobType = JobType.WHATSAPP_SEND,
        send_timeout: float | None = None,
    ):
        self.queue = queue
        self.job_store = job_store
        self.rate_limiter = rate_limiter
        self.retry_scheduler = retry_scheduler
        self.job_type = JobType(job_type)
        self.send_timeout = send_timeout or settings.SEND_TIMEOUT_SECONDS

    async def process_queue(self, send_fn: SendFn) -> Job | None:
        """
        Dispatch the next job.

        Returns the job after its outcome is persisted, or None when the
        queue is empty or paused, or the job was deferred or dropped.
        """
        job, _ = await self._process_next(send_fn)
        return job

    async def drain(self, send_fn: SendFn, max_jobs: int | None = None) -> list[Job]:
        """
        Process jobs until the queue is empty, deferred, or ``max_jobs``.

        Stale ids (lost, not pending, locked elsewhere) are skipped
        without ending the batch.
        """
        max_jobs = max_jobs or settings.DISPATCH_BATCH_SIZE
        processed = []
        for _ in range(max_jobs):
            job, keep_draining = await self._process_next(send_fn)
            if job is not None:
                processed.append(job)
            if not keep_draining:
                break
        return processed

    async def _process_next(self, send_fn: SendFn) -> tuple[Job | None, bool]:
        """One dispatch step; the flag says whether draining may continue."""
        if await self.queue.is_paused(self.job_type):
            return None, False

        popped = await self.queue.dequeue(self.job_type)
        if popped is None:
            return None, False
        job_id, priority = popped
        log = get_logger(job_id=job_id, job_type=self.job_type.value)

        async with self.job_store.lock(job_id) as owned:
            if not owned:
                log.warning("job_locked_elsewhere")
                await self.queue.requeue(job_id, self.job_type, priority)
                return None, True

            job = await self.job_store.get(job_id)
            if job is None:
                # Record TTL ran out before the id was popped
                log.warning("job_lost")
                metrics.track_job_lost(self.job_type.value)
                return None, True

            if job.status != JobStatus.PENDING:
                log.warning("job_not_pending", status=job.status.value)
                return None, True

            if not await self.rate_limiter.check_rate_limit(job.job_type):
                await self.queue.requeue(job.id, job.job_type, job.priority)
                metrics.track_rate_limit_exceeded(job.job_type.value)
                log.info("job_rate_limited", priority=job.priority.value)
                return None, False

            # The lease outlives this call if the outcome is never written
            await self.retry_scheduler.hold_lease(job)
            job.transition(JobStatus.PROCESSING)
            await self.job_store.save(job)

            outcome = await self._invoke(send_fn, job, log)
            await self._apply(job, outcome, log)
            return job, True

    async def _invoke(self, send_fn: SendFn, job: Job, log) -> SendResult:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(send_fn(job), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            log.warning("send_timed_out", timeout_seconds=self.send_timeout)
            return SendResult.from_classification(error_classifier.NETWORK_ERROR)
        except Exception as exc:
            log.exception("send_raised", error=str(exc))
            classification = error_classifier.classify(None)
            return SendResult(
                success=False,
                error=classification.user_message,
                retry=True,
                classification=classification,
            )
        finally:
            metrics.track_send_duration(job.job_type.value, time.monotonic() - started)

    async def _apply(self, job: Job, outcome: SendResult, log) -> None:
        if outcome.success:
            job.result = outcome.result
            job.transition(JobStatus.COMPLETED)
            await self._persist(job, lambda: self.job_store.save(job), log)
            metrics.track_job_completed(job.job_type.value)
            log.info("job_completed", attempts=job.attempts)
            return

        classification = outcome.classification or error_classifier.classify(outcome.error_code)
        error = outcome.error or classification.user_message
        status = job.record_failure(error, outcome.error_code, retry=outcome.retry)

        if status == JobStatus.RETRYING:
            async def write():
                job.next_retry_at = await self.retry_scheduler.schedule_retry(job, classification)
                await self.job_store.save(job)

            await self._persist(job, write, log)
            metrics.track_job_retry(job.job_type.value, classification.category.value)
            log.warning(
                "job_retrying",
                attempts=job.attempts,
                max_retries=job.max_retries,
                error_code=outcome.error_code,
                error_category=classification.category.value,
                next_retry_at=job.next_retry_at.isoformat(),
            )
        else:
            await self._persist(job, lambda: self.job_store.save(job), log)
            metrics.track_job_failed(job.job_type.value, classification.category.value)
            log.error(
                "job_failed",
                attempts=job.attempts,
                max_retries=job.max_retries,
                error_code=outcome.error_code,
                error_category=classification.category.value,
            )

    async def _persist(self, job: Job, write: Callable[[], Awaitable[Any]], log) -> None:
        """
        Write the job's outcome, retrying store timeouts.

        If every attempt fails the error propagates and the job keeps its
        processing lease, so the stalled-job sweep settles it later.
        """
        for attempt in range(1, OUTCOME_WRITE_ATTEMPTS + 1):
            try:
                await write()
                break
            except StoreTimeoutError:
                if attempt == OUTCOME_WRITE_ATTEMPTS:
                    log.error("job_outcome_unsaved", status=job.status.value, attempts=attempt)
                    raise
                log.warning("job_outcome_write_retry", status=job.status.value, attempt=attempt)
                await asyncio.sleep(OUTCOME_WRITE_BACKOFF_SECONDS * attempt)

        try:
            await self.retry_scheduler.release_lease(job.id)
        except StoreTimeoutError:
            # The sweep drops leases of jobs that already settled
            log.warning("job_lease_release_failed", status=job.status.value)
