"""
Retry scheduler tests: due markers and the sweep.
"""
import pytest

from invite_dispatch.models.job import Job, JobPriority, JobStatus, JobType, Recipient, WhatsAppSendPayload
from invite_dispatch.services import error_classifier
from invite_dispatch.services.retry_scheduler import PROCESSING_LEASES_KEY, RETRY_MARKERS_KEY


async def retrying_job(job_store, priority=JobPriority.LOW, error_code=None) -> Job:
    job = Job(
        job_type=JobType.WHATSAPP_SEND,
        priority=priority,
        payload=WhatsAppSendPayload(
            recipient=Recipient(guest_id="g1", event_id="e1", phone="+5511999990001"),
            template_name="wedding_invite",
        ),
    )
    job.transition(JobStatus.PROCESSING)
    job.record_failure("temporary", error_code, retry=True)
    await job_store.save(job)
    return job


@pytest.mark.asyncio
async def test_unknown_error_uses_default_backoff(retry_scheduler, job_store, clock):
    job = await retrying_job(job_store)

    assert retry_scheduler.backoff_delay_ms(job) == 60_000
    job.attempts = 2
    assert retry_scheduler.backoff_delay_ms(job) == 120_000


@pytest.mark.asyncio
async def test_marker_is_not_processed_before_due(retry_scheduler, job_store, clock):
    job = await retrying_job(job_store)
    await retry_scheduler.schedule_retry(job)

    clock.advance(59)
    assert await retry_scheduler.process_due_retries() == 0
    assert await retry_scheduler.pending_retries() == 1
    assert (await job_store.get(job.id)).status == JobStatus.RETRYING


@pytest.mark.asyncio
async def test_due_job_returns_to_its_own_priority(retry_scheduler, job_store, queue, clock):
    job = await retrying_job(job_store, priority=JobPriority.LOW)
    await retry_scheduler.schedule_retry(job)

    clock.advance(60)
    assert await retry_scheduler.process_due_retries() == 1

    assert await retry_scheduler.pending_retries() == 0
    assert await queue.stats(JobType.WHATSAPP_SEND) == {"high": 0, "normal": 0, "low": 1, "total": 1}
    assert (await job_store.get(job.id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_claimed_marker_is_only_requeued_once(retry_scheduler, job_store, queue, clock):
    job = await retrying_job(job_store)
    await retry_scheduler.schedule_retry(job)
    clock.advance(60)

    assert await retry_scheduler.process_due_retries() == 1
    assert await retry_scheduler.process_due_retries() == 0
    assert (await queue.stats(JobType.WHATSAPP_SEND))["total"] == 1


@pytest.mark.asyncio
async def test_marker_for_expired_job_is_dropped(retry_scheduler, job_store, clock):
    job = await retrying_job(job_store)
    await retry_scheduler.schedule_retry(job)
    await job_store.delete(job.id)
    clock.advance(60)

    assert await retry_scheduler.process_due_retries() == 0
    assert await retry_scheduler.pending_retries() == 0


@pytest.mark.asyncio
async def test_locked_job_keeps_its_marker(retry_scheduler, job_store, store, clock):
    job = await retrying_job(job_store)
    await retry_scheduler.schedule_retry(job)
    await store.acquire_lock(job_store.lock_key(job.id), "other-worker", 120_000)
    clock.advance(60)

    assert await retry_scheduler.process_due_retries() == 0
    assert await store.zrangebyscore(RETRY_MARKERS_KEY, retry_scheduler.now_ms()) == [job.id]


@pytest.mark.asyncio
async def test_rate_limit_classification_shortens_delay(retry_scheduler, job_store):
    job = await retrying_job(job_store, error_code=63010)
    classification = error_classifier.classify(63010)

    due_at = await retry_scheduler.schedule_retry(job, classification)

    assert int(due_at.timestamp() * 1000) == retry_scheduler.now_ms() + 5_000


@pytest.mark.asyncio
async def test_schedule_requires_retrying_job(retry_scheduler, job_store):
    job = await retrying_job(job_store)
    job.transition(JobStatus.PENDING)
    with pytest.raises(ValueError):
        await retry_scheduler.schedule_retry(job)


async def processing_job(job_store, retry_scheduler, max_retries=3) -> Job:
    job = Job(
        job_type=JobType.WHATSAPP_SEND,
        priority=JobPriority.HIGH,
        max_retries=max_retries,
        payload=WhatsAppSendPayload(
            recipient=Recipient(guest_id="g1", event_id="e1", phone="+5511999990001"),
            template_name="wedding_invite",
        ),
    )
    await retry_scheduler.hold_lease(job)
    job.transition(JobStatus.PROCESSING)
    await job_store.save(job)
    return job


@pytest.mark.asyncio
async def test_live_lease_is_left_alone(retry_scheduler, job_store, clock):
    job = await processing_job(job_store, retry_scheduler)
    clock.advance(30)

    assert await retry_scheduler.recover_stalled_jobs() == 0
    assert (await job_store.get(job.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_expired_lease_turns_processing_job_into_retry(retry_scheduler, job_store, store, clock):
    job = await processing_job(job_store, retry_scheduler)
    clock.advance(61)

    assert await retry_scheduler.recover_stalled_jobs() == 1

    stored = await job_store.get(job.id)
    assert stored.status == JobStatus.RETRYING
    assert stored.attempts == 1
    assert stored.error == error_classifier.NETWORK_ERROR.user_message
    assert await retry_scheduler.pending_retries() == 1
    assert await store.zcard(PROCESSING_LEASES_KEY) == 0


@pytest.mark.asyncio
async def test_expired_lease_on_last_attempt_fails_job(retry_scheduler, job_store, clock):
    job = await processing_job(job_store, retry_scheduler, max_retries=1)
    clock.advance(61)

    assert await retry_scheduler.recover_stalled_jobs() == 1
    assert (await job_store.get(job.id)).status == JobStatus.FAILED
    assert await retry_scheduler.pending_retries() == 0


@pytest.mark.asyncio
async def test_expired_lease_of_unstarted_job_requeues_it(retry_scheduler, job_store, queue, clock):
    job = await processing_job(job_store, retry_scheduler)
    job.status = JobStatus.PENDING
    await job_store.save(job)
    clock.advance(61)

    assert await retry_scheduler.recover_stalled_jobs() == 1
    assert await queue.dequeue(JobType.WHATSAPP_SEND) == (job.id, JobPriority.HIGH)
