"""
Priority queue: three ordered lists of job ids per job type.

Producers LPUSH onto the tail, consumers RPOP from the head. Pop is a
single atomic store call, so two workers never receive the same id.
"""
import structlog

from invite_dispatch.models.job import Job, JobPriority, JobStatus, JobType, PRIORITY_ORDER
from invite_dispatch.services.job_store import JobStore
from invite_dispatch.services.kv_store import KeyValueStore

logger = structlog.get_logger()

PAUSE_TTL_SECONDS = 3600


class PriorityQueue:
    """HIGH before NORMAL before LOW, FIFO within a priority."""

    def __init__(self, store: KeyValueStore, job_store: JobStore):
        self.store = store
        self.job_store = job_store

    @staticmethod
    def queue_key(job_type: JobType, priority: JobPriority) -> str:
        return f"queue:{JobType(job_type).value}:{JobPriority(priority).value}"

    @staticmethod
    def pause_key(job_type: JobType) -> str:
        return f"queue:{JobType(job_type).value}:paused"

    async def enqueue(self, job: Job) -> str:
        """
        Persist the job record then append its id to its priority list.

        The record is written first so a consumer never pops an id whose
        record does not exist yet.
        """
        if job.status != JobStatus.PENDING:
            raise ValueError(f"Only pending jobs can be enqueued, got {job.status.value}")

        await self.job_store.save(job)
        await self.store.lpush(self.queue_key(job.job_type, job.priority), job.id)
        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job.job_type.value,
            priority=job.priority.value,
        )
        return job.id

    async def requeue(self, job_id: str, job_type: JobType, priority: JobPriority) -> None:
        """Put an id back on the tail of its own priority list."""
        await self.store.lpush(self.queue_key(job_type, priority), job_id)

    async def dequeue(self, job_type: JobType) -> tuple[str, JobPriority] | None:
        """Pop the next job id, highest priority first."""
        for priority in PRIORITY_ORDER:
            job_id = await self.store.rpop(self.queue_key(job_type, priority))
            if job_id is not None:
                return job_id, priority
        return None

    async def stats(self, job_type: JobType) -> dict[str, int]:
        """Queue depth per priority plus total."""
        depths = {
            priority.value: await self.store.llen(self.queue_key(job_type, priority))
            for priority in PRIORITY_ORDER
        }
        depths["total"] = sum(depths.values())
        return depths

    async def pause(self, job_type: JobType) -> None:
        """Stop dispatch for a job type; expires after an hour."""
        await self.store.set(self.pause_key(job_type), "true", ttl_seconds=PAUSE_TTL_SECONDS)
        logger.info("queue_paused", job_type=JobType(job_type).value)

    async def resume(self, job_type: JobType) -> None:
        await self.store.delete(self.pause_key(job_type))
        logger.info("queue_resumed", job_type=JobType(job_type).value)

    async def is_paused(self, job_type: JobType) -> bool:
        return await self.store.get(self.pause_key(job_type)) == "true"

    async def clear(self, job_type: JobType) -> None:
        """Drop every queued id for a job type. Records are left to expire."""
        for priority in PRIORITY_ORDER:
            await self.store.delete(self.queue_key(job_type, priority))
