"""
Job model for queued dispatch work.

Jobs live in the key/value store as JSON (24h TTL), not in the relational
database. The payload is a tagged union: one variant per job type.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from invite_dispatch.errors import InvalidTransitionError


class JobStatus(str, enum.Enum):
    """Job status enum."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class JobPriority(str, enum.Enum):
    """Queue channel; HIGH is always drained before NORMAL before LOW."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER = [JobPriority.HIGH, JobPriority.NORMAL, JobPriority.LOW]


class JobType(str, enum.Enum):
    """Job type enum; selects rate-limit bucket and queue family."""
    WHATSAPP_SEND = "whatsapp_send"
    SMS_SEND = "sms_send"


class Recipient(BaseModel):
    """Who a message goes to."""
    guest_id: str
    event_id: str
    phone: str


class WhatsAppSendPayload(BaseModel):
    type: Literal["whatsapp_send"] = "whatsapp_send"
    recipient: Recipient
    template_name: str
    variables: dict[str, str] = {}


class SmsSendPayload(BaseModel):
    type: Literal["sms_send"] = "sms_send"
    recipient: Recipient
    template_name: str
    variables: dict[str, str] = {}


JobPayload = Annotated[
    Union[WhatsAppSendPayload, SmsSendPayload],
    Field(discriminator="type"),
]

PAYLOAD_TYPES: dict[JobType, type[BaseModel]] = {
    JobType.WHATSAPP_SEND: WhatsAppSendPayload,
    JobType.SMS_SEND: SmsSendPayload,
}

# Allowed status moves. RETRYING -> PENDING is the only cycle.
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RETRYING},
    JobStatus.RETRYING: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


class Job(BaseModel):
    """A unit of dispatch work with a bounded retry budget."""
    id: str = Field(default_factory=new_job_id)
    job_type: JobType
    priority: JobPriority = JobPriority.NORMAL
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_retries: int = 3
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    next_retry_at: datetime | None = None
    error: str | None = None
    error_code: int | None = None
    result: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def transition(self, target: JobStatus, now: datetime | None = None) -> None:
        """Move to ``target``, stamping the matching timestamp."""
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status, target)

        now = now or utcnow()
        self.status = target
        self.updated_at = now

        if target == JobStatus.PROCESSING:
            self.processed_at = now
        elif target == JobStatus.COMPLETED:
            self.completed_at = now
            self.error = None
            self.error_code = None
            self.next_retry_at = None
        elif target == JobStatus.FAILED:
            self.failed_at = now
            self.next_retry_at = None
        elif target == JobStatus.PENDING:
            self.next_retry_at = None

    def record_failure(self, error: str, error_code: int | None, retry: bool,
                       now: datetime | None = None) -> JobStatus:
        """
        Count a failed attempt and pick RETRYING or FAILED.

        Only valid from PROCESSING. Once ``attempts`` reaches ``max_retries``
        the job fails permanently whatever ``retry`` says.
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidTransitionError(self.id, self.status, JobStatus.FAILED)

        self.attempts += 1
        self.error = error
        self.error_code = error_code
        if retry and self.attempts < self.max_retries:
            target = JobStatus.RETRYING
        else:
            target = JobStatus.FAILED
        self.transition(target, now=now)
        return target

    def __repr__(self):
        return f"<Job(id={self.id}, type={self.job_type.value}, status={self.status.value})>"
