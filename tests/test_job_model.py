"""
Job state machine tests.
"""
import pytest
from pydantic import ValidationError

from invite_dispatch.errors import InvalidTransitionError
from invite_dispatch.models.job import (
    Job,
    JobStatus,
    JobType,
    Recipient,
    SmsSendPayload,
    WhatsAppSendPayload,
)


def make_job(max_retries=3) -> Job:
    return Job(
        job_type=JobType.WHATSAPP_SEND,
        max_retries=max_retries,
        payload=WhatsAppSendPayload(
            recipient=Recipient(guest_id="g1", event_id="e1", phone="+5511999990001"),
            template_name="wedding_invite",
        ),
    )


def test_new_job_is_pending():
    job = make_job()
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.id.startswith("job_")


def test_retryable_failures_stop_at_max_retries():
    job = make_job(max_retries=3)
    statuses = []
    for _ in range(3):
        job.transition(JobStatus.PROCESSING)
        statuses.append(job.record_failure("boom", 30003, retry=True))
        if job.status == JobStatus.RETRYING:
            job.transition(JobStatus.PENDING)

    assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.FAILED]
    assert job.attempts == 3
    assert job.failed_at is not None


def test_non_retryable_failure_fails_immediately():
    job = make_job()
    job.transition(JobStatus.PROCESSING)

    assert job.record_failure("bad number", 21211, retry=False) == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error_code == 21211


def test_failed_is_final():
    job = make_job()
    job.transition(JobStatus.PROCESSING)
    job.record_failure("bad number", 21211, retry=False)

    for target in JobStatus:
        with pytest.raises(InvalidTransitionError):
            job.transition(target)


def test_failure_outside_processing_is_rejected():
    job = make_job()
    with pytest.raises(InvalidTransitionError):
        job.record_failure("boom", None, retry=True)
    assert job.attempts == 0


def test_completion_clears_error():
    job = make_job()
    job.transition(JobStatus.PROCESSING)
    job.record_failure("boom", 30003, retry=True)
    job.transition(JobStatus.PENDING)
    job.transition(JobStatus.PROCESSING)
    job.transition(JobStatus.COMPLETED)

    assert job.error is None
    assert job.error_code is None
    assert job.completed_at is not None
    assert job.is_terminal


def test_payload_round_trips_through_discriminator():
    job = Job(
        job_type=JobType.SMS_SEND,
        payload=SmsSendPayload(
            recipient=Recipient(guest_id="g1", event_id="e1", phone="+5511999990001"),
            template_name="reminder",
        ),
    )
    restored = Job.model_validate_json(job.model_dump_json())
    assert isinstance(restored.payload, SmsSendPayload)


def test_unknown_payload_type_is_rejected():
    with pytest.raises(ValidationError):
        Job.model_validate({
            "job_type": "whatsapp_send",
            "payload": {"type": "fax_send", "recipient": {}, "template_name": "x"},
        })
