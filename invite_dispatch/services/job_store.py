"""
Job store: TTL-bounded job records keyed by job id.

Records expire after JOB_TTL_SECONDS (24h). Every save bumps the job's
version. Status read-modify-write must happen under ``lock(job_id)`` so
two workers never rewrite the same job concurrently.
"""
import uuid
from contextlib import asynccontextmanager

import structlog
from pydantic import ValidationError

from invite_dispatch.config import settings
from invite_dispatch.models.job import Job, utcnow
from invite_dispatch.services.kv_store import KeyValueStore

logger = structlog.get_logger()


class JobStore:
    """Persists Job records in the key/value store."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int | None = None,
                 lock_ttl_seconds: int | None = None):
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.JOB_TTL_SECONDS
        self.lock_ttl_ms = (lock_ttl_seconds or settings.JOB_LOCK_TTL_SECONDS) * 1000

    @staticmethod
    def job_key(job_id: str) -> str:
        return f"job:{job_id}"

    @staticmethod
    def lock_key(job_id: str) -> str:
        return f"lock:job:{job_id}"

    async def get(self, job_id: str) -> Job | None:
        """Get job by ID. Returns None if unknown, expired or unreadable."""
        raw = await self.store.get(self.job_key(job_id))
        if raw is None:
            return None
        try:
            return Job.model_validate_json(raw)
        except ValidationError:
            logger.error("job_record_corrupt", job_id=job_id)
            return None

    async def save(self, job: Job) -> Job:
        """Write the job back, bumping version and updated_at."""
        job.version += 1
        job.updated_at = utcnow()
        await self.store.set(self.job_key(job.id), job.model_dump_json(), ttl_seconds=self.ttl_seconds)
        return job

    async def delete(self, job_id: str) -> bool:
        return bool(await self.store.delete(self.job_key(job_id)))

    @asynccontextmanager
    async def lock(self, job_id: str):
        """
        Single-owner lock for the duration of a status change.

        Yields True if this caller owns the job, False if another worker
        holds it. The lock expires on its own if the holder dies.
        """
        token = uuid.uuid4().hex
        key = self.lock_key(job_id)
        acquired = await self.store.acquire_lock(key, token, self.lock_ttl_ms)
        try:
            yield acquired
        finally:
            if acquired:
                released = await self.store.release_lock(key, token)
                if not released:
                    logger.warning("job_lock_expired_before_release", job_id=job_id)
